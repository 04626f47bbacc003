from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.errors import AgencyNotResolved

bearer_scheme = HTTPBearer(auto_error=False)

PRINCIPAL_TYPES = ("agency", "employee")


@dataclass(frozen=True)
class Principal:
    """Opaque caller identity issued by the identity service."""

    id: str
    type: str


@dataclass(frozen=True)
class Owner:
    """The agency a transaction belongs to, resolved once per transaction."""

    type: str
    id: str
    agency_id: str

    def to_doc(self) -> Dict[str, str]:
        return {"type": self.type, "id": self.id, "agency_id": self.agency_id}


def _jwt_secret() -> str:
    # Keep in backend env in future; default only for dev/testing.
    return os.environ.get("JWT_SECRET", "dev_jwt_secret_change_me")


def create_access_token(*, subject: str, principal_type: str, minutes: int = 60 * 12) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "type": principal_type,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=minutes)).timestamp()),
    }
    return jwt.encode(payload, _jwt_secret(), algorithm="HS256")


def decode_token(token: str) -> dict[str, Any]:
    try:
        return jwt.decode(token, _jwt_secret(), algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


async def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Principal:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Authentication required")

    payload = decode_token(credentials.credentials)
    subject = payload.get("sub")
    principal_type = payload.get("type")
    if not subject or principal_type not in PRINCIPAL_TYPES:
        raise HTTPException(status_code=401, detail="Invalid token")
    return Principal(id=str(subject), type=str(principal_type))


async def resolve_owner(db: AsyncIOMotorDatabase, principal: Principal) -> Owner:
    """Map a principal to its owning agency, failing closed.

    An agency principal owns itself; an employee principal belongs to the
    agency recorded on its employee document. Inactive or unknown agencies are
    rejected.
    """

    if principal.type == "agency":
        agency_id = principal.id
    elif principal.type == "employee":
        employee = await db.agency_employees.find_one({"_id": principal.id})
        if not employee or not employee.get("agency_id") or employee.get("is_active") is False:
            raise AgencyNotResolved(details={"principal_type": principal.type})
        agency_id = str(employee["agency_id"])
    else:
        raise AgencyNotResolved(details={"principal_type": principal.type})

    agency = await db.agencies.find_one({"_id": agency_id})
    if not agency or not agency.get("is_active", False):
        raise AgencyNotResolved(details={"principal_type": principal.type})

    return Owner(type=principal.type, id=principal.id, agency_id=agency_id)
