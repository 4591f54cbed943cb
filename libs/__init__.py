"""adoq shared libraries.

- common: settings, error taxonomy and retry policy
- caching: Redis client and caches
- memory: conversation store
- models: shared pydantic models
- firebase: session token verification setup
"""
