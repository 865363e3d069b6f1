"""Rate-limited, multi-tenant background job engine for AI document work."""
