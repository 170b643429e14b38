"""
Bank Provider Implementations

Abstract token/data client interfaces and the KFTC open banking clients.
"""

from .base import BaseDataClient, BaseProviderClient, BaseTokenClient
from .kftc import KftcDataClient, KftcTokenClient

__all__ = ['BaseProviderClient', 'BaseTokenClient', 'BaseDataClient', 'KftcTokenClient', 'KftcDataClient']
