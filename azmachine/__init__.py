"""Azure and Azure Stack Hub machine services, a TTL LRU cache, event recording and spot termination handling."""

__version__ = "0.1.0"