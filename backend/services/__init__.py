# Services are imported where needed:
# from services.auth import TokenService
# from services.accounts import AccountService
# from services.revocation import RevocationService
# from services.refresh_store import RefreshTokenStore

__all__ = []
