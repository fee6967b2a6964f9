from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

from zksig.crypto_utils.secretbox import KEY_SCHEMES, KeyScheme

DEFAULT_GATEWAY_URL = "https://w3s.link"
DEFAULT_UPLOAD_URL = "http://localhost:3000/api/upload"
DEFAULT_TIMEOUT_S = 30.0


class SecretResolver:
    """
    Flexible secret resolver.
    Resolution order:
      1) explicit mapping passed at init
      2) os.environ
    """
    def __init__(
        self,
        mapping: Optional[Mapping[str, str]] = None,
        auto_dotenv: bool = False,
        dotenv_path: Optional[str] = None,
        dotenv_override: bool = False,
    ):
        if auto_dotenv:
            load_dotenv(dotenv_path=dotenv_path, override=dotenv_override)

        self._mapping = dict(mapping or {})

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        if name in self._mapping:
            return self._mapping[name]
        if name in os.environ:
            return os.environ[name]
        return default


@dataclass(frozen=True)
class Settings:
    """
    Runtime settings for the blob store and the protocol.

    - upload_url: endpoint accepting a multipart "file" upload of a CAR
    - upload_token: optional bearer token for the upload endpoint
    - gateway_url: IPFS HTTP gateway used to fetch blobs by cid
    - timeout_s: per-request timeout
    - key_scheme: key-derivation message scheme used for new agreements
    """
    upload_url: str = DEFAULT_UPLOAD_URL
    upload_token: Optional[str] = None
    gateway_url: str = DEFAULT_GATEWAY_URL
    timeout_s: float = DEFAULT_TIMEOUT_S
    key_scheme: KeyScheme = "typed"

    @classmethod
    def from_env(
        cls,
        secrets: Optional[SecretResolver] = None,
        *,
        auto_dotenv: bool = True,
    ) -> "Settings":
        secrets = secrets or SecretResolver(auto_dotenv=auto_dotenv)

        timeout_raw = secrets.get("ZKSIG_HTTP_TIMEOUT")
        try:
            timeout_s = float(timeout_raw) if timeout_raw else DEFAULT_TIMEOUT_S
        except ValueError:
            raise ValueError(f"ZKSIG_HTTP_TIMEOUT must be a number, got {timeout_raw!r}") from None

        scheme = (secrets.get("ZKSIG_KEY_SCHEME") or "typed").strip().lower()
        if scheme not in KEY_SCHEMES:
            raise ValueError("ZKSIG_KEY_SCHEME must be 'typed' or 'personal'")

        return cls(
            upload_url=secrets.get("ZKSIG_UPLOAD_URL", DEFAULT_UPLOAD_URL),
            upload_token=secrets.get("ZKSIG_UPLOAD_TOKEN") or None,
            gateway_url=secrets.get("ZKSIG_GATEWAY_URL", DEFAULT_GATEWAY_URL).rstrip("/"),
            timeout_s=timeout_s,
            key_scheme=scheme,  # type: ignore[arg-type]
        )
