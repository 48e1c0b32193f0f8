import re
import logging
import functools

from cryptography import x509  # python3-cryptography.x86_64
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from .client import BackendClient
from .exceptions import (
    BackendError,
    ConfigurationError,
    InvalidRequest,
    MalformedResponse,
    TTLExceeded,
)
from .models import DEFAULT_MOUNT, CertificateBundle
from .provisioning import ca_ready
from .readiness import DEFAULT_INTERVAL, DEFAULT_TIMEOUT, wait_until_ready
from .utils import format_duration, public_key_matches, split_pem_chain, verify_chain

logger = logging.getLogger(__name__)

# matches the backend's wording both for rejected TTLs ("ttl ... is greater
# than max ttl", "... beyond the expiration of the CA certificate") and for
# TTLs it shortened itself ("TTL ... is longer than permitted maxTTL").
TTL_LIMIT_MESSAGE = re.compile(
    r"\bttl\b.*\b(longer|larger|greater|exceeds?|beyond|max_?ttl)\b", re.IGNORECASE
)


class PkiIssuer:
    """ Requests certificates from a PKI secrets engine.

    One issuer is bound to one backend connection. It holds no mutable state,
    so ``issue()`` may be called from several threads at once.

    Args:
        client (BackendClient): transport to the backend.
        role (str): default role, used when a request names none.
        mount (str): default mount path of the PKI engine.
        ttl (datetime.timedelta): default TTL for requests without one; None
            leaves the lease TTL to the backend.
    """

    def __init__(self, client, role=None, mount=DEFAULT_MOUNT, ttl=None):
        if not isinstance(client, BackendClient):
            raise ConfigurationError("PkiIssuer needs a BackendClient")
        self.client = client
        self.role = role
        self.mount = (mount or DEFAULT_MOUNT).strip("/")
        self.ttl = ttl

    def issue(self, request, deadline=None, cancel=None):
        """
        Have the backend generate a key pair and certificate for ``request``.

        Issuance is a single round trip and is never retried here: the caller
        decides what to do with a :class:`BackendError`.

        Args:
            request (CertificateRequest): what to issue.
            deadline (float): seconds after which the call is abandoned.
            cancel (threading.Event): aborts the call when set.

        Returns:
            CertificateBundle: leaf, issuer chain and private key.

        Raises:
            InvalidRequest: no role could be determined.
            TTLExceeded: the TTL is above what the role or mount allows.
            BackendError: any other backend or transport failure.
            MalformedResponse: the reply is incomplete or inconsistent.
            Cancelled: the deadline passed or ``cancel`` was set.
        """
        path = self._path("issue", request)
        fields = self.request_fields(request)
        logger.info("issuing certificate for %s via %s", _identities(request), path)
        response = self._write(path, fields, deadline, cancel)
        return self._bundle_from_response(response, path, self._ttl(request))

    def sign(self, request, private_key=None, deadline=None, cancel=None):
        """
        Like :meth:`issue`, but the private key never leaves this process: a
        CSR for ``request`` is signed by the backend's ``sign`` endpoint.

        Args:
            request (CertificateRequest): what to issue.
            private_key: key to certify; a new P-256 key is generated if None.

        Returns:
            CertificateBundle: the bundle, carrying the local private key.
        """
        if private_key is None:
            private_key = ec.generate_private_key(ec.SECP256R1())
        path = self._path("sign", request)
        fields = self.request_fields(request)
        fields["csr"] = build_csr(request, private_key)
        logger.info("signing CSR for %s via %s", _identities(request), path)
        response = self._write(path, fields, deadline, cancel)
        return self._bundle_from_response(
            response, path, self._ttl(request), private_key=private_key
        )

    def wait_until_ready(self, timeout=DEFAULT_TIMEOUT, interval=DEFAULT_INTERVAL, cancel=None):
        """
        Block until the mount answers with a CA certificate, or ``timeout``
        passes. Meant to run once before the issuer is put to use.

        Returns:
            bool: whether the backend became ready.
        """
        return wait_until_ready(
            functools.partial(ca_ready, self.client, self.mount),
            timeout=timeout,
            interval=interval,
            cancel=cancel,
            pass_deadline=True,
        )

    def request_fields(self, request):
        """ translate a CertificateRequest into the backend's field mapping """
        fields = {"format": "pem"}
        if request.common_name:
            fields["common_name"] = request.common_name
        if request.dns_sans:
            fields["alt_names"] = ",".join(request.dns_sans)
        if request.ip_sans:
            fields["ip_sans"] = ",".join(str(ip) for ip in request.ip_sans)
        if request.uri_sans:
            fields["uri_sans"] = ",".join(request.uri_sans)
        if request.other_sans:
            fields["other_sans"] = ";".join(str(san) for san in request.other_sans)
        if request.exclude_cn_from_sans:
            fields["exclude_cn_from_sans"] = True
        ttl = self._ttl(request)
        if ttl:
            fields["ttl"] = format_duration(ttl)
        return fields

    def _ttl(self, request):
        ttl = request.ttl if request.ttl is not None else self.ttl
        # zero means "backend default"
        return ttl if ttl and ttl.total_seconds() > 0 else None

    def _path(self, operation, request):
        role = request.role or self.role
        if not role:
            raise InvalidRequest("no role given in request or issuer")
        mount = (request.mount or self.mount).strip("/")
        return f"{mount}/{operation}/{role}"

    def _write(self, path, fields, deadline, cancel):
        try:
            return self.client.write(path, fields, deadline=deadline, cancel=cancel)
        except BackendError as e:
            if any(TTL_LIMIT_MESSAGE.search(msg) for msg in e.errors):
                raise TTLExceeded(
                    "requested ttl exceeds backend limit",
                    path=e.path,
                    status=e.status,
                    errors=e.errors,
                ) from e
            raise

    def _bundle_from_response(self, response, path, ttl, private_key=None):
        truncated = [w for w in response.warnings if TTL_LIMIT_MESSAGE.search(w)]
        if truncated:
            raise TTLExceeded(
                "backend shortened the requested ttl", path=path, status=200, errors=truncated
            )

        certificate_pem = response.get("certificate")
        if not certificate_pem:
            raise MalformedResponse("response has no certificate", path=path)
        try:
            certificates = split_pem_chain(certificate_pem)
        except ValueError as e:
            raise MalformedResponse(f"certificate does not parse: {e}", path=path) from e
        if not certificates:
            raise MalformedResponse("certificate is not PEM encoded", path=path)
        leaf = certificates[0]

        chain_pems = response.get("ca_chain") or []
        if not chain_pems and response.get("issuing_ca"):
            chain_pems = [response["issuing_ca"]]
        if isinstance(chain_pems, str):
            chain_pems = [chain_pems]
        try:
            chain = [cert for pem in chain_pems for cert in split_pem_chain(pem)]
        except ValueError as e:
            raise MalformedResponse(f"ca_chain does not parse: {e}", path=path) from e

        if private_key is None:
            key_pem = response.get("private_key")
            if not key_pem:
                raise MalformedResponse("response has no private_key", path=path)
            try:
                private_key = serialization.load_pem_private_key(
                    key_pem.encode("ascii"), password=None
                )
            except (ValueError, TypeError) as e:
                raise MalformedResponse(f"private_key does not parse: {e}", path=path) from e

        if not public_key_matches(leaf, private_key):
            raise MalformedResponse(
                "certificate public key does not match private key", path=path
            )
        broken = verify_chain([leaf] + chain)
        if broken is not None:
            raise MalformedResponse(
                f"chain entry {broken} is not signed by the next certificate", path=path
            )

        if ttl is not None:
            validity = leaf.not_valid_after_utc - leaf.not_valid_before_utc
            if validity < ttl:
                raise TTLExceeded(
                    f"certificate is valid for {validity}, less than the requested {ttl}",
                    path=path,
                    status=200,
                )

        serial = response.get("serial_number") or format_serial(leaf.serial_number)
        bundle = CertificateBundle(leaf, chain, private_key, serial, response.warnings)
        logger.info("issued certificate %s (%s)", serial, leaf.subject.rfc4514_string())
        return bundle


def build_csr(request, private_key):
    """ build a PEM CSR carrying the request's common name and SANs """
    builder = x509.CertificateSigningRequestBuilder()
    if request.common_name:
        builder = builder.subject_name(
            x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, request.common_name)])
        )
    else:
        builder = builder.subject_name(x509.Name([]))
    names = (
        [x509.DNSName(name) for name in request.dns_sans]
        + [x509.IPAddress(ip) for ip in request.ip_sans]
        + [x509.UniformResourceIdentifier(uri) for uri in request.uri_sans]
    )
    if names:
        builder = builder.add_extension(x509.SubjectAlternativeName(names), critical=False)
    csr = builder.sign(private_key, hashes.SHA256())
    return csr.public_bytes(serialization.Encoding.PEM).decode("ascii")


def format_serial(number):
    """ render a serial number as colon-separated hex, as the backend does """
    text = f"{number:x}"
    text = "0" * (len(text) % 2) + text
    return ":".join(text[i : i + 2] for i in range(0, len(text), 2))


def _identities(request):
    names = ([request.common_name] if request.common_name else []) + request.dns_sans
    names += [str(ip) for ip in request.ip_sans] + request.uri_sans
    return ", ".join(names) or ", ".join(str(san) for san in request.other_sans)
