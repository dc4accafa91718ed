"""Relational store adapters."""

from .app_db import AppDatabase
from .membership import MembershipRepository
from .memory import InMemoryMembershipStore

__all__ = ["AppDatabase", "InMemoryMembershipStore", "MembershipRepository"]
