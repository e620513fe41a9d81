from typing import Optional

from fastapi import Header, HTTPException, Request

from .storage import Repository


def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    prefix = "Bearer "
    if not authorization or not authorization.startswith(prefix):
        return None
    token = authorization[len(prefix) :].strip()
    return token or None


async def resolve_principal(storage: Repository, token: Optional[str]) -> Optional[str]:
    """Map a token to a known user id.

    Tokens are issued elsewhere; here the bearer token is the user identifier
    and only has to name a registered user.
    """
    if not token:
        return None
    user = await storage.get_user(token.strip())
    return user.id if user else None


async def get_current_user(request: Request, authorization: Optional[str] = Header(default=None)) -> str:
    token = parse_bearer(authorization)
    if token is None:
        raise HTTPException(status_code=401, detail="invalid_token")
    user_id = await resolve_principal(request.app.state.hub.storage, token)
    if user_id is None:
        raise HTTPException(status_code=401, detail="invalid_token")
    return user_id
