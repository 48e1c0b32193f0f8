import ipaddress
from datetime import timedelta

from cryptography.hazmat.primitives import serialization

from .exceptions import InvalidRequest
from .utils import parse_duration

DEFAULT_MOUNT = "pki"


class OtherSAN:
    """ An "other name" SAN, sent to the backend as ``OID;type:value``.

    Args:
        oid (str): dotted object identifier, e.g. "1.3.6.1.4.1.311.20.2.3".
        type (str): value encoding understood by the backend, e.g. "utf8".
        value (str): the name itself.
    """

    def __init__(self, oid, type, value):
        self.oid = oid
        self.type = type
        self.value = value

    @classmethod
    def parse(cls, text):
        oid, sep, rest = text.partition(";")
        type_, sep2, value = rest.partition(":")
        if not (sep and sep2 and oid and type_):
            raise InvalidRequest(f"other SAN {text!r} is not of the form OID;type:value")
        return cls(oid, type_, value)

    def __str__(self):
        return f"{self.oid};{self.type}:{self.value}"

    def __eq__(self, other):
        return isinstance(other, OtherSAN) and str(self) == str(other)

    def __hash__(self):
        return hash(str(self))

    def __repr__(self):
        return f"OtherSAN({self.oid!r}, {self.type!r}, {self.value!r})"


class CertificateRequest:
    """
    What the caller wants a certificate for. Role, mount and TTL may be left
    unset, in which case the issuer's defaults apply; a TTL of None or zero
    leaves the lease TTL to the backend.

    Raises:
        InvalidRequest: no identity was given, a SAN list is a bare string,
            an IP SAN does not parse, or the TTL is negative or not a duration.
    """

    def __init__(
        self,
        common_name=None,
        dns_sans=(),
        ip_sans=(),
        other_sans=(),
        uri_sans=(),
        ttl=None,
        role=None,
        mount=None,
        exclude_cn_from_sans=False,
    ):
        self.common_name = common_name or None
        for name, sans in (
            ("dns_sans", dns_sans),
            ("ip_sans", ip_sans),
            ("other_sans", other_sans),
            ("uri_sans", uri_sans),
        ):
            if isinstance(sans, (str, bytes)):
                raise InvalidRequest(f"{name} must be a list of names, not a single string")
        self.dns_sans = list(dns_sans)
        try:
            self.ip_sans = [ipaddress.ip_address(ip) for ip in ip_sans]
        except ValueError as e:
            raise InvalidRequest(str(e)) from None
        self.other_sans = [
            san if isinstance(san, OtherSAN) else OtherSAN.parse(san)
            for san in other_sans
        ]
        self.uri_sans = list(uri_sans)
        if ttl is not None:
            try:
                ttl = parse_duration(ttl)
            except ValueError as e:
                raise InvalidRequest(str(e)) from None
        self.ttl = ttl
        self.role = role
        self.mount = mount
        self.exclude_cn_from_sans = exclude_cn_from_sans

        if not (
            self.common_name
            or self.dns_sans
            or self.ip_sans
            or self.other_sans
            or self.uri_sans
        ):
            raise InvalidRequest("request needs a common name or at least one SAN")
        if self.ttl is not None and self.ttl < timedelta(0):
            raise InvalidRequest("ttl must be positive")

    def __repr__(self):
        return (
            f"CertificateRequest(common_name={self.common_name!r}, "
            f"dns_sans={self.dns_sans!r}, ip_sans={[str(i) for i in self.ip_sans]!r}, "
            f"role={self.role!r}, mount={self.mount!r})"
        )


class CertificateBundle:
    """ An issued certificate with its issuer chain and private key.

    ``chain`` holds the issuing CA certificates ordered from the leaf's
    issuer up to the root; ``full_chain`` prepends the leaf.
    """

    def __init__(self, certificate, chain, private_key, serial_number, warnings=()):
        self.certificate = certificate
        self.chain = list(chain)
        self.private_key = private_key
        self.serial_number = serial_number
        self.warnings = list(warnings)

    @property
    def full_chain(self):
        return [self.certificate] + self.chain

    def certificate_pem(self):
        return self.certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")

    def chain_pem(self):
        return "".join(
            cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
            for cert in self.chain
        )

    def private_key_pem(self):
        return self.private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode("ascii")

    def __repr__(self):
        return f"CertificateBundle(serial_number={self.serial_number!r}, subject={self.certificate.subject.rfc4514_string()!r})"
