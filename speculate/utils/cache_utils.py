"""
Cache utilities for Speculate
Provides a cached-query decorator and explicit key helpers for leaderboard reads
"""

import functools

from flask import current_app

from speculate import cache

LEADERBOARD_CACHE_TIMEOUT = 300


def leaderboard_cache_key(kind, period_key):
    return f"leaderboard_{kind}_{period_key or 'latest'}"


def cached_query(model_name, timeout=300):
    """
    Decorator for caching query results keyed on the call arguments

    Args:
        model_name: Name of the model for cache key generation
        timeout: Cache timeout in seconds
    """

    def decorator(f):
        @functools.wraps(f)
        def wrapped(*args, **kwargs):
            # Generate cache key from function name and arguments
            args_str = "_".join(str(arg) for arg in args)
            kwargs_str = "_".join(f"{k}_{v}" for k, v in sorted(kwargs.items()))
            cache_key = f"query_{model_name}_{f.__name__}_{args_str}_{kwargs_str}"

            # Try to get from cache
            result = cache.get(cache_key)
            if result is not None:
                current_app.logger.debug(f"Query cache hit: {cache_key}")
                return result

            # Execute query and cache result
            result = f(*args, **kwargs)
            cache.set(cache_key, result, timeout=timeout)
            current_app.logger.debug(f"Query cache set: {cache_key}")

            return result

        return wrapped

    return decorator


def invalidate_leaderboard_cache(kind, period_key):
    """Drop cached reads for a snapshot and for the kind's 'latest' view"""
    try:
        cache.delete_many(
            leaderboard_cache_key(kind, period_key),
            leaderboard_cache_key(kind, None),
        )
    except Exception as e:
        current_app.logger.error(f"Failed to invalidate leaderboard cache: {e}")


def invalidate_model_cache(model_name):
    """
    Invalidate cached queries for a model

    SimpleCache cannot delete by pattern, so this clears the whole cache.

    Args:
        model_name: Name of the model to invalidate
    """
    try:
        cache.clear()
        current_app.logger.info(f"Cache cleared for model: {model_name}")
    except Exception as e:
        current_app.logger.error(f"Failed to clear cache: {e}")


def get_cache_stats():
    """Get cache statistics"""
    return {
        "type": current_app.config.get("CACHE_TYPE", "Unknown"),
        "timeout": current_app.config.get("CACHE_DEFAULT_TIMEOUT", 300),
    }
