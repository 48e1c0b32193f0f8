from .client import BackendClient, BackendResponse
from .configloader import load_config_and_issuer
from .exceptions import (
    IssuerError,
    InvalidRequest,
    BackendError,
    TTLExceeded,
    MalformedResponse,
    Cancelled,
    ConfigurationError,
)
from .issuer import PkiIssuer
from .models import DEFAULT_MOUNT, CertificateBundle, CertificateRequest, OtherSAN
from .readiness import require_ready, wait_until_ready
from .trust import TrustConfig

__version__ = "1.0.0"


def create_issuer(url, token, role=None, mount=DEFAULT_MOUNT, ca_certs=None, ca_bundle=None, ttl=None, **kwargs):
    """ build TrustConfig, BackendClient and PkiIssuer in one go

    Extra keyword arguments (``client_cert``, ``client_key``) go to
    :class:`TrustConfig`.
    """
    trust = TrustConfig(url, token, ca_bundle=ca_bundle, ca_certs=ca_certs, **kwargs)
    return PkiIssuer(BackendClient(trust), role=role, mount=mount, ttl=ttl)
