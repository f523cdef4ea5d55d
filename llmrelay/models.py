"""Credential and error envelope models for the relay."""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class CredentialUpdate(BaseModel):
    """Fields obtained by a successful credential refresh.

    Only the fields a refresh actually obtained are set; everything else
    stays ``None`` (or empty) and is never written back.
    """

    api_key: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    provider_specific_data: Dict[str, Any] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (
            self.api_key
            or self.access_token
            or self.refresh_token
            or self.provider_specific_data
        )


class Credentials(BaseModel):
    """Provider credentials owned by the caller's key store."""

    api_key: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    provider_specific_data: Dict[str, Any] = Field(default_factory=dict)

    def apply(self, update: CredentialUpdate) -> None:
        """Merge a refresh result in place without dropping unrelated fields."""
        if update.api_key:
            self.api_key = update.api_key
        if update.access_token:
            self.access_token = update.access_token
        if update.refresh_token:
            self.refresh_token = update.refresh_token
        if update.provider_specific_data:
            merged = dict(self.provider_specific_data)
            merged.update(update.provider_specific_data)
            self.provider_specific_data = merged


class ErrorDetail(BaseModel):
    """OpenAI-compatible error detail."""

    message: str
    type: str
    code: str


class ErrorResponse(BaseModel):
    """Error response envelope."""

    error: ErrorDetail
