from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import secrets
import struct
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Protocol
from urllib.parse import quote, urlencode

from dataguard.metrics import observe_auth_failure
from dataguard.security.context import LoginRequest, LoginResponse, LogoutRequest, UserContext
from dataguard.security.errors import AuthenticationFailed
from dataguard.security.interfaces import Authenticator, RequestLike
from dataguard.security.store import TwoFactorStore


logger = logging.getLogger("dataguard.auth")

DEFAULT_BACKUP_CODE_COUNT = 10

_HASHES = {"SHA1": hashlib.sha1, "SHA256": hashlib.sha256, "SHA512": hashlib.sha512}


@dataclass(frozen=True, slots=True)
class TwoFactorConfig:
    algorithm: str = "SHA1"
    digits: int = 6
    period: int = 30
    skew_window: int = 1


@dataclass(slots=True)
class TwoFactorSecret:
    secret: str
    qr_code_url: str
    issuer: str
    account_name: str
    backup_codes: list[str] = field(default_factory=list)


class TOTPGenerator:
    """RFC 6238 time based one-time passwords."""

    def __init__(self, config: TwoFactorConfig | None = None, *, clock=time.time) -> None:
        self.config = config or TwoFactorConfig()
        self._clock = clock

    def generate_secret(self) -> str:
        return base64.b32encode(secrets.token_bytes(20)).decode("ascii").rstrip("=")

    def generate_qr_code_url(self, secret: str, issuer: str, account_name: str) -> str:
        params = urlencode(
            {
                "algorithm": self.config.algorithm,
                "digits": self.config.digits,
                "issuer": issuer,
                "period": self.config.period,
                "secret": secret,
            }
        )
        label = quote(f"{issuer}:{account_name}", safe="")
        return f"otpauth://totp/{label}?{params}"

    def generate_code(self, secret: str, timestamp: float) -> str:
        key = _decode_secret(secret)
        counter = int(timestamp) // self.config.period
        digest = hmac.new(key, struct.pack(">Q", counter), self._hash()).digest()
        offset = digest[-1] & 0x0F
        truncated = struct.unpack(">I", digest[offset : offset + 4])[0] & 0x7FFFFFFF
        return str(truncated % (10**self.config.digits)).zfill(self.config.digits)

    def validate_code(self, secret: str, code: str, now: float | None = None) -> bool:
        """Accept ``code`` for the current step or ``skew_window`` steps around it."""

        current = self._clock() if now is None else now
        for step in range(-self.config.skew_window, self.config.skew_window + 1):
            expected = self.generate_code(secret, current + step * self.config.period)
            if hmac.compare_digest(expected, code):
                return True
        return False

    def _hash(self):
        return _HASHES.get(self.config.algorithm.upper(), hashlib.sha1)


def _decode_secret(secret: str) -> bytes:
    normalized = secret.strip().upper()
    padded = normalized + "=" * (-len(normalized) % 8)
    try:
        return base64.b32decode(padded)
    except (binascii.Error, ValueError) as exc:
        raise AuthenticationFailed("invalid two-factor secret") from exc


def generate_backup_codes(count: int) -> list[str]:
    return [secrets.token_bytes(4).hex().upper() for _ in range(count)]


def _hash_backup_code(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


class TwoFactorProvider(Protocol):
    def generate_2fa_secret(self, user_id: int, issuer: str, account_name: str) -> TwoFactorSecret:
        ...

    def validate_2fa_code(self, secret: str, code: str) -> bool:
        ...

    def enable_2fa(self, user_id: int, secret: str, backup_codes: list[str]) -> None:
        ...

    def disable_2fa(self, user_id: int) -> None:
        ...

    def get_2fa_status(self, user_id: int) -> bool:
        ...

    def get_2fa_secret(self, user_id: int) -> str:
        ...

    def generate_backup_codes(self, user_id: int, count: int) -> list[str]:
        ...

    def validate_backup_code(self, user_id: int, code: str) -> bool:
        ...


class MemoryTwoFactorProvider:
    """Keeps secrets and sha256 hashed backup codes in process memory."""

    def __init__(self, config: TwoFactorConfig | None = None, *, generator: TOTPGenerator | None = None) -> None:
        self.totp = generator or TOTPGenerator(config)
        self._secrets: dict[int, str] = {}
        self._backup_codes: dict[int, dict[str, bool]] = {}
        self._lock = threading.Lock()

    def generate_2fa_secret(self, user_id: int, issuer: str, account_name: str) -> TwoFactorSecret:
        secret = self.totp.generate_secret()
        return TwoFactorSecret(
            secret=secret,
            qr_code_url=self.totp.generate_qr_code_url(secret, issuer, account_name),
            issuer=issuer,
            account_name=account_name,
            backup_codes=generate_backup_codes(DEFAULT_BACKUP_CODE_COUNT),
        )

    def validate_2fa_code(self, secret: str, code: str) -> bool:
        return self.totp.validate_code(secret, code)

    def enable_2fa(self, user_id: int, secret: str, backup_codes: list[str]) -> None:
        with self._lock:
            self._secrets[user_id] = secret
            codes = self._backup_codes.setdefault(user_id, {})
            for code in backup_codes:
                codes[_hash_backup_code(code)] = False

    def disable_2fa(self, user_id: int) -> None:
        with self._lock:
            self._secrets.pop(user_id, None)
            self._backup_codes.pop(user_id, None)

    def get_2fa_status(self, user_id: int) -> bool:
        with self._lock:
            return user_id in self._secrets

    def get_2fa_secret(self, user_id: int) -> str:
        with self._lock:
            secret = self._secrets.get(user_id)
        if secret is None:
            raise AuthenticationFailed("user does not have 2FA enabled")
        return secret

    def generate_backup_codes(self, user_id: int, count: int) -> list[str]:
        codes = generate_backup_codes(count)
        with self._lock:
            self._backup_codes[user_id] = {_hash_backup_code(code): False for code in codes}
        return codes

    def validate_backup_code(self, user_id: int, code: str) -> bool:
        """Consume a backup code. Reusing a code raises ``AuthenticationFailed``."""

        hashed = _hash_backup_code(code)
        with self._lock:
            codes = self._backup_codes.get(user_id)
            if codes is None or hashed not in codes:
                return False
            if codes[hashed]:
                raise AuthenticationFailed("backup code already used")
            codes[hashed] = True
        return True


class DatabaseTwoFactorProvider:
    """Secrets and sha256 hashed backup codes kept by the ``resolvespec_totp_*`` procedures."""

    def __init__(
        self, store: TwoFactorStore, config: TwoFactorConfig | None = None, *, generator: TOTPGenerator | None = None
    ) -> None:
        self.store = store
        self.totp = generator or TOTPGenerator(config)

    def generate_2fa_secret(self, user_id: int, issuer: str, account_name: str) -> TwoFactorSecret:
        secret = self.totp.generate_secret()
        return TwoFactorSecret(
            secret=secret,
            qr_code_url=self.totp.generate_qr_code_url(secret, issuer, account_name),
            issuer=issuer,
            account_name=account_name,
            backup_codes=generate_backup_codes(DEFAULT_BACKUP_CODE_COUNT),
        )

    def validate_2fa_code(self, secret: str, code: str) -> bool:
        return self.totp.validate_code(secret, code)

    def enable_2fa(self, user_id: int, secret: str, backup_codes: list[str]) -> None:
        hashed = [_hash_backup_code(code) for code in backup_codes]
        self.store.totp_enable(user_id, secret, hashed).unwrap("failed to enable 2FA")

    def disable_2fa(self, user_id: int) -> None:
        self.store.totp_disable(user_id).unwrap("failed to disable 2FA")

    def get_2fa_status(self, user_id: int) -> bool:
        return bool(self.store.totp_get_status(user_id).unwrap("failed to get 2FA status"))

    def get_2fa_secret(self, user_id: int) -> str:
        secret = self.store.totp_get_secret(user_id).unwrap("failed to get 2FA secret")
        if not secret:
            raise AuthenticationFailed("user does not have 2FA enabled")
        return str(secret)

    def generate_backup_codes(self, user_id: int, count: int) -> list[str]:
        codes = generate_backup_codes(count)
        hashed = [_hash_backup_code(code) for code in codes]
        self.store.totp_regenerate_backup_codes(user_id, hashed).unwrap("failed to regenerate backup codes")
        return codes

    def validate_backup_code(self, user_id: int, code: str) -> bool:
        """Consume a backup code. A refusal from the store raises ``AuthenticationFailed``."""

        result = self.store.totp_validate_backup_code(user_id, _hash_backup_code(code))
        return bool(result.unwrap("invalid backup code", AuthenticationFailed))


class TwoFactorAuthenticator:
    """Wraps another authenticator and gates its login behind a second factor."""

    def __init__(
        self, base: Authenticator, provider: TwoFactorProvider, config: TwoFactorConfig | None = None
    ) -> None:
        self.base = base
        self.provider = provider
        self.totp = TOTPGenerator(config)

    def login(self, request: LoginRequest) -> LoginResponse:
        response = self.base.login(request)
        if response.user is None or not self.provider.get_2fa_status(response.user.user_id):
            return response

        if not request.two_factor_code:
            response.requires_2fa = True
            response.token = ""
            response.refresh_token = ""
            return response

        user_id = response.user.user_id
        secret = self.provider.get_2fa_secret(user_id)
        valid = self.totp.validate_code(secret, request.two_factor_code)
        if not valid:
            valid = self.provider.validate_backup_code(user_id, request.two_factor_code)
        if not valid:
            observe_auth_failure("invalid_2fa_code")
            logger.warning("auth.two_factor_rejected", extra={"user_id": user_id})
            raise AuthenticationFailed("invalid 2FA code")

        response.user = replace(response.user, two_factor_enabled=True)
        return response

    def logout(self, request: LogoutRequest) -> None:
        self.base.logout(request)

    def authenticate(self, request: RequestLike) -> UserContext:
        return self.base.authenticate(request)

    def setup_2fa(self, user_id: int, issuer: str, account_name: str) -> TwoFactorSecret:
        return self.provider.generate_2fa_secret(user_id, issuer, account_name)

    def enable_2fa(self, user_id: int, secret: str, verification_code: str) -> list[str]:
        """Verify a first code against ``secret`` and return fresh backup codes."""

        if not self.totp.validate_code(secret, verification_code):
            raise AuthenticationFailed("invalid verification code")

        backup_codes = self.provider.generate_backup_codes(user_id, DEFAULT_BACKUP_CODE_COUNT)
        self.provider.enable_2fa(user_id, secret, backup_codes)
        logger.info("auth.two_factor_enabled", extra={"user_id": user_id})
        return backup_codes

    def disable_2fa(self, user_id: int) -> None:
        self.provider.disable_2fa(user_id)
        logger.info("auth.two_factor_disabled", extra={"user_id": user_id})

    def regenerate_backup_codes(self, user_id: int, count: int = DEFAULT_BACKUP_CODE_COUNT) -> list[str]:
        return self.provider.generate_backup_codes(user_id, count)
