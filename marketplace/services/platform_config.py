"""
Platform configuration: reads and writes the ``system_config`` table.

Holds the fee settings used when pricing orders and the payment gateway
secrets. Secrets (and withdrawal destination accounts) are encrypted with
Fernet; the key is derived from JWT_SECRET via PBKDF2.
"""

import base64
import logging
import os
from datetime import datetime
from decimal import Decimal, InvalidOperation

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from marketplace.database import Database
from marketplace.models.schemas import to_money

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_FEE_PERCENT = Decimal("0")
DEFAULT_DELIVERY_FEE = Decimal("5.00")


class PlatformConfigError(Exception):
    """Invalid platform setting."""
    pass


def _get_fernet() -> Fernet:
    """Derive the Fernet key from the JWT_SECRET environment variable."""
    secret = os.getenv("JWT_SECRET", "default-secret-key")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"marketplace-salt",
        iterations=100_000,
    )
    key = base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))
    return Fernet(key)


def encrypt(plaintext: str) -> str:
    f = _get_fernet()
    return f.encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt(ciphertext: str) -> str:
    f = _get_fernet()
    return f.decrypt(ciphertext.encode("utf-8")).decode("utf-8")


def mask(value: str, visible: int = 4) -> str:
    """Hide all but the last ``visible`` characters."""
    if len(value) <= visible:
        return "*" * len(value)
    return "*" * (len(value) - visible) + value[-visible:]


# ── Generic config access ─────────────────────────────────


def get_config(db: Database, key: str) -> str | None:
    """Read a ``system_config`` value."""
    conn = db.connect()
    try:
        row = conn.execute(
            "SELECT config_value FROM system_config WHERE config_key = ?",
            (key,),
        ).fetchone()
        return row["config_value"] if row else None
    finally:
        conn.close()


def set_config(db: Database, key: str, value: str | None) -> None:
    """Upsert a ``system_config`` value."""
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    conn = db.connect()
    try:
        conn.execute(
            """INSERT INTO system_config (config_key, config_value, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT(config_key)
               DO UPDATE SET config_value = excluded.config_value,
                             updated_at = excluded.updated_at""",
            (key, value, now),
        )
        conn.commit()
    finally:
        conn.close()


def _get_decimal(db: Database, key: str, default: Decimal) -> Decimal:
    raw = get_config(db, key)
    if raw is None or raw == "":
        return default
    try:
        return Decimal(raw)
    except InvalidOperation:
        logger.warning("Invalid numeric config %s=%r, using default %s", key, raw, default)
        return default


def _get_secret(db: Database, key: str, env_var: str) -> str | None:
    """Encrypted value from the table, falling back to the environment."""
    stored = get_config(db, key)
    if stored:
        try:
            return decrypt(stored)
        except InvalidToken:
            logger.error("Unable to decrypt config %s (JWT_SECRET changed?)", key)
    return os.getenv(env_var) or None


# ── Fees ──────────────────────────────────────────────────


def get_service_fee_percent(db: Database) -> Decimal:
    """Platform service fee charged on top of the subtotal, in percent."""
    return _get_decimal(db, "service_fee_percent", DEFAULT_SERVICE_FEE_PERCENT)


def get_delivery_fee(db: Database) -> Decimal:
    """Flat delivery fee fixed on each order at creation time."""
    return to_money(_get_decimal(db, "delivery_fee", DEFAULT_DELIVERY_FEE))


def update_fees(
    db: Database,
    service_fee_percent: Decimal | None = None,
    delivery_fee: Decimal | None = None,
) -> dict:
    """
    Update the fee settings.

    Raises:
        PlatformConfigError: a value is negative or the percentage exceeds 100.
    """
    if service_fee_percent is not None:
        if not service_fee_percent.is_finite() or not (0 <= service_fee_percent <= 100):
            raise PlatformConfigError("La tarifa de servicio debe estar entre 0 y 100")
        set_config(db, "service_fee_percent", str(service_fee_percent))
    if delivery_fee is not None:
        if not delivery_fee.is_finite() or delivery_fee < 0:
            raise PlatformConfigError("El costo de envío no puede ser negativo")
        set_config(db, "delivery_fee", str(to_money(delivery_fee)))
    return get_fee_settings(db)


def get_fee_settings(db: Database) -> dict:
    return {
        "serviceFeePercent": float(get_service_fee_percent(db)),
        "deliveryFee": f"{get_delivery_fee(db):.2f}",
    }


# ── Payment gateway secrets ───────────────────────────────


def get_gateway_access_token(db: Database) -> str | None:
    return _get_secret(db, "mp_access_token", "MP_ACCESS_TOKEN")


def get_webhook_secret(db: Database) -> str | None:
    return _get_secret(db, "mp_webhook_secret", "MP_WEBHOOK_SECRET")


def save_gateway_credentials(
    db: Database, access_token: str | None = None, webhook_secret: str | None = None
) -> dict:
    """Store gateway secrets encrypted. Empty values are ignored."""
    if access_token:
        set_config(db, "mp_access_token", encrypt(access_token.strip()))
    if webhook_secret:
        set_config(db, "mp_webhook_secret", encrypt(webhook_secret.strip()))
    return get_gateway_status(db)


def get_gateway_status(db: Database) -> dict:
    """Masked view of the gateway configuration."""
    token = get_gateway_access_token(db)
    return {
        "accessToken": mask(token) if token else "",
        "webhookSecretConfigured": bool(get_webhook_secret(db)),
    }
