import hmac

from fastapi import Depends, Header, HTTPException, status

from creatorcore.core.access import AccessContext
from creatorcore.core.config import Settings, get_settings

DEFAULT_ROLE = "member"


async def require_cron_secret(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> None:
    secret = (settings.cron_secret or "").strip()
    if not secret:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="cron secret is not configured")

    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="bearer token required")

    token = authorization.split(" ", maxsplit=1)[1].strip()
    if not token or not hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")


async def get_access_context(
    _: None = Depends(require_cron_secret),
    x_org_id: str | None = Header(default=None, alias="X-Org-Id"),
    x_role: str | None = Header(default=None, alias="X-Role"),
) -> AccessContext:
    role = (x_role or "").strip().lower() or DEFAULT_ROLE
    org_id = (x_org_id or "").strip() or None
    return AccessContext(org_id=org_id, role=role)
