# Provision a Vault dev server the way the integration tests expect it, then
# issue a certificate from each mount.
#
#   vault server -dev -dev-root-token-id=mysecrettoken &
#   python3 provision-and-issue.py http://127.0.0.1:8200 mysecrettoken

import sys
import logging
import functools
from datetime import timedelta

from vaultissuer import (
    BackendClient,
    CertificateRequest,
    PkiIssuer,
    TrustConfig,
    require_ready,
)
from vaultissuer import provisioning

logging.basicConfig(level=logging.INFO)

url, token = sys.argv[1:3]
client = BackendClient(TrustConfig(url, token))

require_ready(
    functools.partial(provisioning.backend_up, client),
    what="vault",
    timeout=10,
    pass_deadline=True,
)

for mount in ("pki", "mount-test-pki"):
    provisioning.mount_pki(client, mount, max_lease_ttl=timedelta(hours=87600))
    require_ready(
        functools.partial(provisioning.mount_active, client, mount),
        what=mount,
        pass_deadline=True,
    )
    root = provisioning.generate_root(client, mount, "my_vault", ttl="87600h")
    print(f"{mount}: root {root.subject.rfc4514_string()}")
    provisioning.configure_role(
        client,
        mount,
        "test",
        allowed_domains="myserver.com",
        allow_subdomains=True,
        key_type="any",
        allowed_other_sans="1.3.6.1.4.1.311.20.2.3;utf8:*",
    )

    issuer = PkiIssuer(client, role="test", mount=mount)
    bundle = issuer.issue(CertificateRequest(common_name="a.myserver.com"))
    print(f"{mount}: issued {bundle.serial_number}")
    print(bundle.certificate_pem())

client.close()
