import re
import math
import base64
import binascii
from datetime import timedelta

from cryptography import x509  # python3-cryptography.x86_64
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(h|ms|m|s)")
_PEM_CERT = re.compile(
    rb"-----BEGIN CERTIFICATE-----.+?-----END CERTIFICATE-----", re.DOTALL
)


def format_duration(ttl):
    """ render a duration the way the backend accepts it

    Whole hours are written as hours ("87600h"), whole minutes as minutes,
    anything else as seconds.

    Args:
        ttl (datetime.timedelta): the duration, must be positive.

    Returns:
        str: duration string, e.g. "168h".
    """
    seconds = math.ceil(ttl.total_seconds())
    if seconds <= 0:
        raise ValueError("duration must be positive")
    if seconds % 3600 == 0:
        return f"{seconds // 3600}h"
    if seconds % 60 == 0:
        return f"{seconds // 60}m"
    return f"{seconds}s"


def parse_duration(value):
    """ parse a backend duration string into a timedelta

    Accepts plain seconds ("3600", 3600) as well as Go-style durations
    ("87600h", "168h0m0s", "1h30m").

    Args:
        value (str or int): duration to parse.

    Returns:
        datetime.timedelta: parsed duration.

    Raises:
        ValueError: the value is not a duration.
    """
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    value = str(value).strip()
    if value.isdigit():
        return timedelta(seconds=int(value))

    total = timedelta()
    pos = 0
    for match in _DURATION_PART.finditer(value):
        if match.start() != pos:
            break
        number, unit = float(match.group(1)), match.group(2)
        total += {
            "h": timedelta(hours=number),
            "m": timedelta(minutes=number),
            "s": timedelta(seconds=number),
            "ms": timedelta(milliseconds=number),
        }[unit]
        pos = match.end()
    if not value or pos != len(value):
        raise ValueError(f"invalid duration {value!r}")
    return total


def base64d(s):
    """ padding-tolerant standard base64 decoder

    Args:
        s (str): input to decode.

    Returns:
        bytes: decoded input.

    Raises:
        ValueError: the input is not base64.
    """
    s = s.strip()
    try:
        return base64.b64decode(s + "=" * (-len(s) % 4), validate=True)
    except binascii.Error as e:
        raise ValueError(str(e)) from e


def split_pem_chain(pem):
    """ split concatenated PEM certificates into parsed certificates

    Args:
        pem (str or bytes): one or more PEM "CERTIFICATE" blocks.

    Returns:
        list: cryptography.x509.Certificate objects, in input order.
    """
    if isinstance(pem, str):
        pem = pem.encode("ascii")
    return [x509.load_pem_x509_certificate(block) for block in _PEM_CERT.findall(pem)]


def _spki(public_key):
    return public_key.public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )


def public_key_matches(certificate, private_key):
    """ check that a private key belongs to a certificate

    Args:
        certificate (cryptography.x509.Certificate): the certificate.
        private_key: a cryptography private key object.

    Returns:
        bool: True if the certificate carries the key's public half.
    """
    return _spki(certificate.public_key()) == _spki(private_key.public_key())


def verify_chain(chain):
    """ check that each certificate was issued by the one following it

    Args:
        chain (list): certificates ordered leaf-to-root.

    Returns:
        int: index of the first certificate that is not signed by its
        successor, or None if the whole chain links up.
    """
    for i, (cert, issuer) in enumerate(zip(chain, chain[1:])):
        try:
            cert.verify_directly_issued_by(issuer)
        except (ValueError, TypeError, InvalidSignature):
            return i
    return None
