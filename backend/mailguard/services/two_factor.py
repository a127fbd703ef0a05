from __future__ import annotations

import base64
import re
from dataclasses import dataclass

import pyotp
import qrcode
from qrcode.image.svg import SvgPathImage

from mailguard.config import settings
from mailguard.services.auth_service import generate_backup_codes, hash_backup_codes

_CODE_PATTERN = re.compile(r"\d{6}")


@dataclass(frozen=True)
class TwoFactorSetup:
    """Enrollment material for one account.

    ``backup_codes`` are shown to the user once; only ``hashed_backup_codes``
    and ``secret`` should be persisted by the caller.
    """

    secret: str
    provisioning_uri: str
    qr_code: str
    backup_codes: list[str]
    hashed_backup_codes: list[str]

    @property
    def manual_entry_key(self) -> str:
        return self.secret


def _qr_data_url(payload: str) -> str:
    image = qrcode.make(payload, image_factory=SvgPathImage)
    encoded = base64.b64encode(image.to_string()).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"


def setup_two_factor(
    account_name: str,
    issuer: str | None = None,
    backup_code_count: int | None = None,
) -> TwoFactorSetup:
    """Generate a TOTP secret, its QR code and a fresh set of backup codes."""
    secret = pyotp.random_base32()
    uri = pyotp.TOTP(secret).provisioning_uri(
        name=account_name or "unknown@example.com",
        issuer_name=issuer or settings.two_factor_issuer,
    )
    codes = generate_backup_codes(backup_code_count or settings.backup_codes_count)
    return TwoFactorSetup(
        secret=secret,
        provisioning_uri=uri,
        qr_code=_qr_data_url(uri),
        backup_codes=codes,
        hashed_backup_codes=hash_backup_codes(codes),
    )


def verify_two_factor(secret: str, code: str, window: int | None = None) -> bool:
    """Verify a 6-digit TOTP code, allowing ``window`` steps of clock drift."""
    if not secret or not _CODE_PATTERN.fullmatch(code or ""):
        return False
    drift = settings.two_factor_window if window is None else window
    return pyotp.TOTP(secret).verify(code, valid_window=drift)
