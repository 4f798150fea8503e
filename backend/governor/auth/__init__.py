from governor.auth.dependencies import require_admin

__all__ = ['require_admin']
