"""Pydantic schemas for MFA endpoints."""

from pydantic import BaseModel, Field


class MfaSetupResponse(BaseModel):
    secret: str
    qr_code_url: str = Field(alias="qrCodeUrl")
    qr_code: str = Field(alias="qrCode")
    backup_codes: list[str] = Field(alias="backupCodes")

    model_config = {"populate_by_name": True}


class MfaCodeRequest(BaseModel):
    code: str = Field(min_length=6, max_length=6)


class MfaLoginRequest(BaseModel):
    temp_token: str
    code: str = Field(min_length=6, max_length=6)


class MfaBackupLoginRequest(BaseModel):
    temp_token: str
    backup_code: str = Field(min_length=8, max_length=10)


class MfaStatusResponse(BaseModel):
    enabled: bool
    state: str
    remaining_backup_codes: int = Field(alias="remainingBackupCodes")

    model_config = {"populate_by_name": True}
