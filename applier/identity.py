"""Who is applying: kube identity, OS user and (optionally) git identity."""
import getpass
import logging
import socket
import subprocess
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Tuple

import urllib3
from kubernetes import client
from kubernetes import config as kube_config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from config import KUBE_CONTEXT

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 2


@dataclass
class Identity:
    kube_context: str = ""
    kube_user: str = ""
    os_user: str = ""
    machine: str = ""
    git_user: str = ""
    git_email: str = ""
    source: str = "unknown"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def kubeconfig_identity(context: Optional[str] = KUBE_CONTEXT) -> Tuple[str, str]:
    """(context name, user) from kubeconfig; empty strings when unavailable."""
    try:
        contexts, current = kube_config.list_kube_config_contexts()
    except (ConfigException, OSError) as e:
        logger.debug(f"No kubeconfig identity: {e}")
        return "", ""
    chosen = current
    if context:
        chosen = next((c for c in contexts if c.get("name") == context), None)
    if not chosen:
        return "", ""
    return chosen.get("name") or "", (chosen.get("context") or {}).get("user") or ""


def self_subject_user(api_client: Optional[client.ApiClient]) -> str:
    """Authenticated username via SelfSubjectReview, or "" if the server does not support it."""
    if api_client is None:
        return ""
    try:
        review = client.AuthenticationV1Api(api_client).create_self_subject_review(
            client.V1SelfSubjectReview())
    except (ApiException, urllib3.exceptions.HTTPError, AttributeError, OSError) as e:
        logger.debug(f"SelfSubjectReview unavailable: {e}")
        return ""
    status = getattr(review, "status", None)
    user_info = getattr(status, "user_info", None)
    return getattr(user_info, "username", None) or ""


def _git_config(key: str) -> str:
    try:
        out = subprocess.run(["git", "config", "--get", key], capture_output=True, text=True,
                             timeout=GIT_TIMEOUT_SECONDS, check=False)
    except (OSError, subprocess.SubprocessError):
        return ""
    return out.stdout.strip() if out.returncode == 0 else ""


def resolve_identity(api_client: Optional[client.ApiClient] = None,
                     record_os_user: bool = True, record_git_identity: bool = False,
                     context: Optional[str] = KUBE_CONTEXT) -> Identity:
    ident = Identity()
    ident.kube_context, ident.kube_user = kubeconfig_identity(context)
    if ident.kube_context or ident.kube_user:
        ident.source = "kubeconfig"

    verified = self_subject_user(api_client)
    if verified:
        ident.kube_user = verified
        ident.source = "ssr"

    if record_os_user:
        try:
            ident.os_user = getpass.getuser()
        except (KeyError, OSError):
            ident.os_user = ""
        ident.machine = socket.gethostname()

    if record_git_identity:
        ident.git_user = _git_config("user.name")
        ident.git_email = _git_config("user.email")
    return ident
