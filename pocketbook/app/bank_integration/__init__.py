"""
Bank Integration Module

Connects a user's bank accounts through KFTC open banking and keeps their
transactions in sync. Provider clients live behind abstract interfaces in
`providers`.
"""

from .service import BankIntegrationService
from .encryption import TokenEncryption
from .deduplication import TransactionDeduplicator
from .ingestion import IngestionPipeline, IngestionResult
from .state_store import BaseOAuthStateStore, InMemoryOAuthStateStore
from .token_manager import TokenLifecycleManager

__all__ = [
    'BankIntegrationService',
    'TokenEncryption',
    'TransactionDeduplicator',
    'IngestionPipeline',
    'IngestionResult',
    'BaseOAuthStateStore',
    'InMemoryOAuthStateStore',
    'TokenLifecycleManager',
]
