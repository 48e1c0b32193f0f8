from configparser import ConfigParser

from .client import BackendClient, DEFAULT_TIMEOUT
from .exceptions import ConfigurationError
from .issuer import PkiIssuer
from .models import DEFAULT_MOUNT
from .readiness import DEFAULT_INTERVAL, DEFAULT_TIMEOUT as DEFAULT_READINESS_TIMEOUT
from .trust import TrustConfig
from .utils import parse_duration

DEFAULT_CONFIG = "/etc/vaultissuer/config.ini"


def load_config_and_issuer(filename):
    """
    Parses the config file given, or raises an exception. This is meant to be
    called on startup (as opposed to when a certificate is needed) to alert
    the administrator to errors immediately.

    Args:
        filename: config file to load.

    Returns:
        (dict, PkiIssuer): A tuple of the parsed settings and an issuer
        bound to the configured backend.

    Raises:
        ConfigurationError: The config could not be loaded, is missing a
            required key or has an invalid value.
    """
    config = {}

    cparser = ConfigParser()
    if not cparser.read(filename):
        raise ConfigurationError("unable to load config file") from None
    if not cparser.has_section("vault"):
        raise ConfigurationError("config file has no [vault] section") from None
    section = cparser["vault"]

    for key in ("url", "token", "role"):
        try:
            config[key] = section[key]
        except KeyError:
            raise ConfigurationError(f"no [vault]{key}= configured") from None

    config["mount"] = section.get("mount", DEFAULT_MOUNT)
    config["caBundle"] = section.get("caBundle")
    config["clientCertificate"] = section.get("clientCertificate")
    config["clientKey"] = section.get("clientKey")

    try:
        config["timeout"] = section.getfloat("timeout", fallback=DEFAULT_TIMEOUT)
    except ValueError:
        raise ConfigurationError("[vault]timeout= must be a number of seconds") from None

    try:
        ttl = section.get("ttl")
        config["ttl"] = parse_duration(ttl) if ttl else None
    except ValueError:
        raise ConfigurationError("[vault]ttl= must be a duration like 24h") from None

    try:
        config["readinessTimeout"] = section.getfloat(
            "readinessTimeout", fallback=DEFAULT_READINESS_TIMEOUT
        )
        config["readinessInterval"] = section.getfloat(
            "readinessInterval", fallback=DEFAULT_INTERVAL
        )
    except ValueError:
        raise ConfigurationError(
            "[vault]readinessTimeout= and readinessInterval= must be numbers"
        ) from None

    trust = TrustConfig(
        config["url"],
        config["token"],
        ca_bundle=config["caBundle"],
        client_cert=config["clientCertificate"],
        client_key=config["clientKey"],
    )
    client = BackendClient(trust, timeout=config["timeout"])
    issuer = PkiIssuer(client, role=config["role"], mount=config["mount"], ttl=config["ttl"])

    return config, issuer
