from .api_cache import ApiCacheEntry
