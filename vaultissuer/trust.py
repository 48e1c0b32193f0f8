import os
import logging
import tempfile
import weakref
from urllib.parse import urlsplit

import requests
from cryptography import x509  # python3-cryptography.x86_64
from cryptography.hazmat.primitives import serialization

from .exceptions import ConfigurationError
from .utils import split_pem_chain

logger = logging.getLogger(__name__)


class TrustConfig:
    """ How we reach the backend, and how we trust it.

    For ``https`` URLs a CA pool is mandatory and is the *only* trust anchor
    used to validate the backend's listener certificate; the system trust
    store is not consulted. For ``http`` URLs nothing is validated, which is
    only acceptable on loopback or private networks.

    The CA pool is either a path to a PEM bundle (``ca_bundle``) or a list of
    certificates (``ca_certs``, cryptography objects or PEM bytes). The
    latter are written once to a private temporary file, since that is what
    the HTTP stack loads trust anchors from.

    Args:
        url (str): backend base URL, e.g. "https://vault.example.test:8200".
        token (str): bearer credential sent with every request.
        ca_bundle (str): path to a PEM file with trusted root certificates.
        ca_certs (list): trusted root certificates, in memory.
        client_cert (str): PEM file with our client certificate (mTLS).
        client_key (str): PEM file with the client key, if not in client_cert.

    Raises:
        ConfigurationError: the URL is not http(s), the token is empty, or an
            https URL was given without a usable CA pool.
    """

    def __init__(
        self, url, token, ca_bundle=None, ca_certs=None, client_cert=None, client_key=None
    ):
        parts = urlsplit(url or "")
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ConfigurationError(f"backend url {url!r} must be http:// or https://")
        if not token:
            raise ConfigurationError("a backend token is required")
        if ca_bundle and ca_certs:
            raise ConfigurationError("cannot specify both ca_bundle and ca_certs")
        if client_key and not client_cert:
            raise ConfigurationError("client_key given without client_cert")

        self._url = url.rstrip("/")
        self._token = token
        self._client_cert = client_cert
        self._client_key = client_key
        self._ca_bundle = None
        self._ca_certs = []

        if parts.scheme == "https":
            if ca_bundle:
                try:
                    with open(ca_bundle, "rb") as f:
                        self._ca_certs = split_pem_chain(f.read())
                except (OSError, ValueError) as e:
                    raise ConfigurationError(f"unable to load CA bundle {ca_bundle}") from e
                self._ca_bundle = ca_bundle
            elif ca_certs:
                self._ca_certs = _load_certs(ca_certs)
                self._ca_bundle = _write_bundle(self, self._ca_certs)
            if not self._ca_certs:
                raise ConfigurationError(
                    "https backend requires a CA pool (ca_bundle or ca_certs)"
                )
        elif ca_bundle or ca_certs:
            logger.warning("ignoring CA pool for plain http backend %s", self._url)

    @property
    def url(self):
        return self._url

    @property
    def token(self):
        return self._token

    @property
    def secure(self):
        return self._url.startswith("https://")

    @property
    def ca_bundle(self):
        return self._ca_bundle

    @property
    def ca_certs(self):
        return list(self._ca_certs)

    @property
    def client_cert(self):
        if self._client_cert and self._client_key:
            return (self._client_cert, self._client_key)
        return self._client_cert

    def build_session(self):
        """ create a ``requests.Session`` bound to this trust configuration """
        session = requests.Session()
        session.verify = self._ca_bundle if self.secure else False
        # keep REQUESTS_CA_BUNDLE and friends from replacing our pool
        session.trust_env = False
        if self.client_cert:
            session.cert = self.client_cert
        return session

    def __repr__(self):
        return f"TrustConfig(url={self._url!r}, secure={self.secure}, ca_certs={len(self._ca_certs)})"


def _load_certs(certs):
    loaded = []
    for cert in certs:
        if isinstance(cert, x509.Certificate):
            loaded.append(cert)
            continue
        try:
            parsed = split_pem_chain(cert)
        except ValueError as e:
            raise ConfigurationError("unable to parse CA certificate") from e
        if not parsed:
            raise ConfigurationError("CA certificate is not PEM encoded")
        loaded.extend(parsed)
    return loaded


def _write_bundle(owner, certs):
    fd, path = tempfile.mkstemp(prefix="vaultissuer-ca-", suffix=".pem")
    with os.fdopen(fd, "wb") as f:
        for cert in certs:
            f.write(cert.public_bytes(serialization.Encoding.PEM))
    weakref.finalize(owner, _unlink, path)
    return path


def _unlink(path):
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
