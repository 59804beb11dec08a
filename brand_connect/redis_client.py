import redis

from brand_connect.core import config

# None when REDIS_URL is empty: events then stay inside this process.
redis_client = redis.from_url(config.REDIS_URL, decode_responses=True) if config.REDIS_URL else None
