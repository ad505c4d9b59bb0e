from __future__ import annotations

from typing import Annotated, Any

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from app.domain.permissions import Actor
from app.infra.auth import AUTH_TOKEN_URL, decode_access_token
from app.services.profile_service import ProfileService

oauth2_scheme = OAuth2PasswordBearer(tokenUrl=AUTH_TOKEN_URL)


def get_current_claims(
    request: Request,
    token: str = Depends(oauth2_scheme),
) -> dict[str, Any]:
    try:
        claims = decode_access_token(token)
    except (jwt.PyJWTError, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        ) from exc
    request.state.claims = claims
    request.state.actor_id = claims.get("sub")
    return claims


def get_profile_service() -> ProfileService:
    return ProfileService()


def get_current_actor(
    claims: Annotated[dict[str, Any], Depends(get_current_claims)],
    profiles: Annotated[ProfileService, Depends(get_profile_service)],
) -> Actor:
    actor = profiles.get_actor(str(claims["sub"]))
    if actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Profile not provisioned",
        )
    return actor


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
