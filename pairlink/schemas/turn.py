"""Data contracts for the TURN credential endpoint."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class IceServerModel(BaseModel):
    urls: list[str] = Field(..., description="STUN/TURN URLs sharing these credentials")
    username: str | None = None
    credential: str | None = None


class TurnCredentialsResponse(BaseModel):
    username: str = Field(..., description="Expiry timestamp used as the TURN username")
    credential: str = Field(..., description="Base64 HMAC-SHA1 of the username")
    ttl: int = Field(..., ge=1, description="Seconds until expiration")
    ice_servers: list[IceServerModel] = Field(..., alias="iceServers")

    model_config = ConfigDict(populate_by_name=True)
