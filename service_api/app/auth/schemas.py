"""
Request and response models for the token endpoints.
"""

from typing import List, Optional
from pydantic import BaseModel


class TokenRequest(BaseModel):
    """Request model for token issuance."""
    service_name: Optional[str] = None
    permissions: Optional[List[str]] = None
    expires_in: Optional[int] = None


class TokenResponse(BaseModel):
    """Response model for token issuance."""
    success: bool = True
    token: str
    expires_at: str
    organization_id: str
    permissions: List[str]


class TokenValidationResponse(BaseModel):
    """Response model for token validation."""
    success: bool = True
    valid: bool
    organization_id: str
    permissions: List[str]
    expires_at: str
    service_name: str


class RevokeRequest(BaseModel):
    """Request model for token revocation."""
    token: Optional[str] = None


class RevokeResponse(BaseModel):
    """Response model for token revocation."""
    success: bool = True
    message: str = "Token revoked successfully"


class TokenInfo(BaseModel):
    organization_id: str
    service_name: str
    permissions: List[str]
    issued_at: str
    expires_at: str


class TokenInfoResponse(BaseModel):
    """Response model for token introspection."""
    success: bool = True
    user: TokenInfo
