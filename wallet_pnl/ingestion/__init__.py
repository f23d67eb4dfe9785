from .client import HeliusClient
from .fetcher import ActivityFetcher, FetchResult

__all__ = ["ActivityFetcher", "FetchResult", "HeliusClient"]
