import logging
import time
import concurrent.futures

import requests

from .exceptions import BackendError, Cancelled, ConfigurationError
from .trust import TrustConfig

logger = logging.getLogger(__name__)

API_PREFIX = "/v1/"
TOKEN_HEADER = "X-Vault-Token"
DEFAULT_TIMEOUT = 30
CANCEL_POLL_INTERVAL = 0.05


class BackendResponse:
    """ Decoded backend reply: the ``data`` mapping plus any warnings. """

    def __init__(self, data=None, warnings=None, request_id=None):
        self.data = data or {}
        self.warnings = list(warnings or [])
        self.request_id = request_id

    def __getitem__(self, key):
        return self.data[key]

    def get(self, key, default=None):
        return self.data.get(key, default)

    def __repr__(self):
        return f"BackendResponse(keys={sorted(self.data)!r}, warnings={self.warnings!r})"


class BackendClient:
    """ Token-authenticated transport to the backend's HTTP API.

    The client knows nothing about PKI: it turns a path and a field mapping
    into an HTTP request, and the JSON reply into a :class:`BackendResponse`.
    Every failure (transport, non-2xx, undecodable body) becomes a
    :class:`BackendError`.

    A client may be shared between threads; ``requests`` pools connections
    per session and we hold no other mutable state.

    Args:
        trust (TrustConfig): endpoint, credential and CA pool.
        timeout (float): transport timeout in seconds for every request.
    """

    def __init__(self, trust, timeout=DEFAULT_TIMEOUT):
        if not isinstance(trust, TrustConfig):
            raise ConfigurationError("BackendClient needs a TrustConfig")
        self.trust = trust
        self.timeout = timeout
        self.session = trust.build_session()
        self.session.headers.update({TOKEN_HEADER: trust.token})
        self._executor = concurrent.futures.ThreadPoolExecutor(
            thread_name_prefix="vaultissuer"
        )

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        self.session.close()
        self._executor.shutdown(wait=False)

    def url_for(self, path):
        return self.trust.url + API_PREFIX + path.strip("/")

    def read(self, path, deadline=None, cancel=None):
        """ GET a path. Returns None if the backend has nothing there (404). """
        return self._request("GET", path, deadline=deadline, cancel=cancel, missing_ok=True)

    def list(self, path, deadline=None, cancel=None):
        """ LIST a path. Returns the ``keys`` of the listing, [] if empty. """
        response = self._request(
            "GET", path, params={"list": "true"}, deadline=deadline, cancel=cancel, missing_ok=True
        )
        return list(response.get("keys", [])) if response else []

    def write(self, path, data=None, deadline=None, cancel=None):
        """ POST a field mapping to a path. """
        return self._request("POST", path, json=data or {}, deadline=deadline, cancel=cancel)

    def delete(self, path, deadline=None, cancel=None):
        return self._request("DELETE", path, deadline=deadline, cancel=cancel)

    def mount(self, path, type="pki", max_lease_ttl=None, default_lease_ttl=None):
        """ enable a secrets engine at ``path`` (administrative) """
        config = {}
        if max_lease_ttl:
            config["max_lease_ttl"] = max_lease_ttl
        if default_lease_ttl:
            config["default_lease_ttl"] = default_lease_ttl
        body = {"type": type}
        if config:
            body["config"] = config
        return self.write(f"sys/mounts/{path.strip('/')}", body)

    def tune(self, path, **settings):
        """ change mount settings such as ``max_lease_ttl`` (administrative) """
        return self.write(f"sys/mounts/{path.strip('/')}/tune", settings)

    def _request(self, method, path, deadline=None, cancel=None, missing_ok=False, **kwargs):
        if deadline is not None and deadline <= 0:
            raise Cancelled(f"deadline of {deadline}s exceeded for {path}")
        url = self.url_for(path)
        timeout = self.timeout if deadline is None else deadline

        def send():
            return self.session.request(method, url, timeout=timeout, **kwargs)

        try:
            response = self._call(send, path, deadline=deadline, cancel=cancel)
        except requests.Timeout as e:
            if deadline is not None:
                raise Cancelled(f"deadline of {deadline}s exceeded for {path}") from e
            raise BackendError("timed out talking to backend", path=path) from e
        except requests.exceptions.SSLError as e:
            raise BackendError(f"TLS handshake with backend failed: {e}", path=path) from e
        except requests.RequestException as e:
            raise BackendError(f"unable to reach backend: {e}", path=path) from e

        logger.debug("%s %s -> %s", method, path, response.status_code)

        if response.status_code == 404 and missing_ok:
            body = _json_or_none(response)
            if not isinstance(body, dict) or not (body.get("data") or body.get("warnings")):
                return None
            return BackendResponse(body.get("data"), body.get("warnings"), body.get("request_id"))
        if response.status_code >= 400:
            body = _json_or_none(response)
            errors = (body.get("errors") if isinstance(body, dict) else None) or []
            if not errors and response.text:
                errors = [response.text.strip()]
            raise BackendError(
                f"backend returned {response.status_code}",
                path=path,
                status=response.status_code,
                errors=errors,
            )
        if response.status_code == 204 or not response.content:
            return BackendResponse()

        body = _json_or_none(response)
        if not isinstance(body, dict):
            raise BackendError(
                "backend returned a body that is not a JSON object",
                path=path,
                status=response.status_code,
                errors=[response.text[:200]],
            )
        for warning in body.get("warnings") or []:
            logger.warning("backend warning for %s: %s", path, warning)
        return BackendResponse(
            body.get("data"), body.get("warnings"), body.get("request_id")
        )

    def _call(self, send, path, deadline=None, cancel=None):
        if cancel is None and deadline is None:
            return send()
        if cancel is not None and cancel.is_set():
            raise Cancelled(f"cancelled before request to {path}")
        # the requests timeout bounds each socket read, not the whole call
        end = None if deadline is None else time.monotonic() + deadline
        future = self._executor.submit(send)
        while True:
            wait = CANCEL_POLL_INTERVAL if cancel is not None else None
            if end is not None:
                remaining = end - time.monotonic()
                if remaining <= 0:
                    future.cancel()
                    raise Cancelled(f"deadline of {deadline}s exceeded for {path}")
                wait = remaining if wait is None else min(wait, remaining)
            try:
                return future.result(timeout=wait)
            except concurrent.futures.TimeoutError:
                if cancel is not None and cancel.is_set():
                    future.cancel()
                    raise Cancelled(f"cancelled during request to {path}") from None


def _json_or_none(response):
    try:
        return response.json()
    except ValueError:
        return None
