# observability/langfuse_client.py
from functools import lru_cache

from dotenv import load_dotenv
from langfuse import get_client

load_dotenv()


@lru_cache(maxsize=1)
def get_langfuse():
    """One client for the whole process, created on first span."""
    return get_client()
