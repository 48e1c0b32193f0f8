"""
Administrative calls used while setting a backend up: enabling PKI mounts,
generating their root CA and writing roles. None of this is on the issuance
path; it exists for setup scripts and tests.
"""
import logging
from datetime import timedelta

from cryptography import x509  # python3-cryptography.x86_64

from .exceptions import MalformedResponse
from .utils import base64d, format_duration

logger = logging.getLogger(__name__)


def _duration(value):
    return format_duration(value) if isinstance(value, timedelta) else value


def mount_pki(client, path, max_lease_ttl=None, default_lease_ttl=None):
    """ enable a PKI engine at ``path``, e.g. ``mount_pki(c, "pki", "87600h")`` """
    logger.info("mounting pki engine at %s", path)
    client.mount(
        path,
        type="pki",
        max_lease_ttl=_duration(max_lease_ttl),
        default_lease_ttl=_duration(default_lease_ttl),
    )


def tune_mount(client, path, max_lease_ttl=None, default_lease_ttl=None):
    settings = {}
    if max_lease_ttl:
        settings["max_lease_ttl"] = _duration(max_lease_ttl)
    if default_lease_ttl:
        settings["default_lease_ttl"] = _duration(default_lease_ttl)
    client.tune(path, **settings)


def generate_root(client, mount, common_name, ttl=None, ip_sans=()):
    """ have the backend create a self-signed root CA for ``mount``

    The root is requested in DER format; the backend returns it base64
    encoded, unlike the PEM used for issued leaves.

    Returns:
        cryptography.x509.Certificate: the new root certificate.

    Raises:
        MalformedResponse: the reply carries no decodable certificate.
    """
    fields = {"common_name": common_name, "format": "der"}
    if ttl:
        fields["ttl"] = _duration(ttl)
    if ip_sans:
        fields["ip_sans"] = ",".join(str(ip) for ip in ip_sans)
    path = f"{mount.strip('/')}/root/generate/internal"
    response = client.write(path, fields)
    try:
        return x509.load_der_x509_certificate(base64d(response["certificate"]))
    except (KeyError, ValueError) as e:
        raise MalformedResponse(f"root certificate missing or invalid: {e}", path=path) from e


def configure_role(client, mount, role, **policy):
    """ write role ``role`` with the given policy fields

    Example::

        configure_role(client, "pki", "test",
                       allowed_domains="myserver.com", allow_subdomains=True,
                       allowed_other_sans="1.3.6.1.4.1.311.20.2.3;utf8:*")
    """
    policy = {k: _duration(v) for k, v in policy.items()}
    client.write(f"{mount.strip('/')}/roles/{role}", policy)


def backend_up(client, deadline=None, cancel=None):
    """ readiness probe: the backend answers its health endpoint """
    client.read("sys/health", deadline=deadline, cancel=cancel)
    return True


def mount_active(client, mount, deadline=None, cancel=None):
    """ readiness probe: ``mount`` shows up in the mount table """
    mounts = client.read("sys/mounts", deadline=deadline, cancel=cancel)
    return bool(mounts) and f"{mount.strip('/')}/" in mounts.data


def ca_ready(client, mount, deadline=None, cancel=None):
    """ readiness probe: ``mount`` has a CA certificate to issue from """
    response = client.read(f"{mount.strip('/')}/cert/ca", deadline=deadline, cancel=cancel)
    return bool(response and response.get("certificate"))
