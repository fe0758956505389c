"""
Secret lookup for the executor.

Secrets live in Google Secret Manager under the worker's GCP project. A secret is
read once when the executor is wired, never per request.

Local runs may source a secret from an env var of the same name, but only with
ALLOW_ENV_SECRET_FALLBACK=1 so a stray shell export never leaks into production.
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Mapping, Optional

from google.api_core import exceptions as gexc

from copytrader.common.errors import SecretError

PROJECT_ENV_VARS = (
    "GCP_PROJECT",
    "GOOGLE_CLOUD_PROJECT",
    "GCLOUD_PROJECT",
    "FIREBASE_PROJECT_ID",
    "FIRESTORE_PROJECT_ID",
)


class SecretNotFound(SecretError):
    """The secret (or the project to look it up in) does not exist."""


def _env_value(env: Mapping[str, str], name: str) -> Optional[str]:
    s = str(env.get(name) or "").strip()
    return s or None


def env_fallback_enabled(env: Mapping[str, str] | None = None) -> bool:
    e = os.environ if env is None else env
    return (_env_value(e, "ALLOW_ENV_SECRET_FALLBACK") or "").lower() in {"1", "true", "yes", "on"}


def secret_project_id(env: Mapping[str, str] | None = None) -> Optional[str]:
    e = os.environ if env is None else env
    for k in PROJECT_ENV_VARS:
        v = _env_value(e, k)
        if v:
            return v
    return None


def secret_version_path(name: str, *, project_id: Optional[str] = None, version: str = "latest") -> str:
    """
    Accepts a bare secret id, `projects/p/secrets/s` or a full version path.
    """
    n = str(name or "").strip()
    if not n:
        raise SecretError("secret name is empty")
    if n.startswith("projects/") and "/secrets/" in n:
        return n if "/versions/" in n else f"{n}/versions/{version}"

    pid = (project_id or "").strip() or secret_project_id()
    if not pid:
        raise SecretNotFound(
            f"no GCP project for secret {n!r}; set one of: {', '.join(PROJECT_ENV_VARS)}"
        )
    return f"projects/{pid}/secrets/{n}/versions/{version}"


@lru_cache(maxsize=16)
def _access_secret_version(path: str) -> str:
    from google.cloud import secretmanager

    client = secretmanager.SecretManagerServiceClient()
    try:
        resp = client.access_secret_version(request={"name": path})
    except gexc.NotFound as e:
        raise SecretNotFound(f"secret not found: {path}") from e
    except Exception as e:
        raise SecretError(f"failed to access secret {path} ({type(e).__name__}: {e})") from e

    data = getattr(getattr(resp, "payload", None), "data", None)
    return (data or b"").decode("utf-8", errors="replace").strip()


def get_secret(
    name: str,
    *,
    required: bool = True,
    version: str = "latest",
    project_id: Optional[str] = None,
) -> Optional[str]:
    """
    Resolve a secret value.

    With `required=False` an absent secret yields None: no project configured,
    no such secret, or an empty payload. Access failures (permissions, transport)
    still raise SecretError either way.
    """
    if env_fallback_enabled():
        v = _env_value(os.environ, name)
        if v is not None:
            return v

    try:
        value = _access_secret_version(secret_version_path(name, project_id=project_id, version=version))
    except SecretNotFound:
        if required:
            raise
        return None
    if value:
        return value
    if required:
        raise SecretNotFound(f"secret {name!r} is empty")
    return None
