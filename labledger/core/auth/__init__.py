from labledger.core.auth.models import User, UserRole

__all__ = ["User", "UserRole"]
