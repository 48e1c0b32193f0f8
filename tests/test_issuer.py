import time
import threading
import unittest
import ipaddress
from datetime import timedelta

from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives.asymmetric import ec

import FakeVault
import vaultissuer
import vaultissuer.issuer as main
from vaultissuer import (
    BackendClient,
    BackendError,
    Cancelled,
    CertificateRequest,
    InvalidRequest,
    OtherSAN,
    PkiIssuer,
    TrustConfig,
    TTLExceeded,
)
from vaultissuer.utils import public_key_matches


def common_name(cert):
    return cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value


def sans(cert, kind):
    ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    return ext.value.get_values_for_type(kind)


class IssuerTester(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.vault = FakeVault.FakeVault()
        FakeVault.provision(cls.vault)
        cls.server = FakeVault.Server(cls.vault).__enter__()

    @classmethod
    def tearDownClass(cls):
        cls.server.__exit__(None, None, None)

    def setUp(self):
        trust = TrustConfig(self.server.url, FakeVault.TOKEN)
        self.client = BackendClient(trust)
        self.issuer = PkiIssuer(self.client, role="test")

    def tearDown(self):
        self.client.close()

    def last_request(self):
        return self.vault.requests[-1]

    def test_issue(self):
        request = CertificateRequest(common_name="a.myserver.com", role="test", mount="pki")
        bundle = self.issuer.issue(request)
        self.assertEqual(common_name(bundle.certificate), "a.myserver.com")
        self.assertEqual(bundle.chain, [self.vault.mounts["pki"].ca_cert])
        self.assertEqual(
            bundle.serial_number, main.format_serial(bundle.certificate.serial_number)
        )
        method, path, body, headers = self.last_request()
        self.assertEqual((method, path), ("POST", "pki/issue/test"))
        self.assertEqual(body["format"], "pem")
        self.assertEqual(headers["X-Vault-Token"], FakeVault.TOKEN)

    def test_domain_not_allowed(self):
        request = CertificateRequest(common_name="a.other.com", role="test")
        with self.assertRaises(BackendError) as cm:
            self.issuer.issue(request)
        self.assertNotIsInstance(cm.exception, TTLExceeded)
        self.assertEqual(cm.exception.status, 400)
        self.assertIn("common name a.other.com not allowed by this role", str(cm.exception))
        self.assertIn("pki/issue/test", str(cm.exception))

    def test_dns_sans(self):
        names = ["b.myserver.com", "a.myserver.com", "c.d.myserver.com"]
        request = CertificateRequest(common_name="a.myserver.com", dns_sans=names)
        bundle = self.issuer.issue(request)
        self.assertEqual(set(sans(bundle.certificate, x509.DNSName)), set(names))
        self.assertEqual(self.last_request()[2]["alt_names"], ",".join(names))

    def test_dns_only_identity(self):
        names = ["x.myserver.com", "y.myserver.com"]
        request = CertificateRequest(
            common_name="x.myserver.com", dns_sans=names, exclude_cn_from_sans=True
        )
        bundle = self.issuer.issue(request)
        self.assertEqual(set(sans(bundle.certificate, x509.DNSName)), set(names))

    def test_key_matches_certificate(self):
        bundle = self.issuer.issue(CertificateRequest(common_name="k.myserver.com"))
        reparsed = x509.load_pem_x509_certificate(bundle.certificate_pem().encode())
        self.assertTrue(public_key_matches(reparsed, bundle.private_key))
        self.assertIn("PRIVATE KEY", bundle.private_key_pem())

    def test_ip_uri_and_other_sans(self):
        other = OtherSAN("1.3.6.1.4.1.311.20.2.3", "utf8", "devops@myserver.com")
        request = CertificateRequest(
            common_name="ip.myserver.com",
            ip_sans=["127.0.0.1", "::1"],
            uri_sans=["spiffe://myserver.com/svc"],
            other_sans=[other],
        )
        bundle = self.issuer.issue(request)
        body = self.last_request()[2]
        self.assertEqual(body["ip_sans"], "127.0.0.1,::1")
        self.assertEqual(body["uri_sans"], "spiffe://myserver.com/svc")
        self.assertEqual(body["other_sans"], "1.3.6.1.4.1.311.20.2.3;utf8:devops@myserver.com")
        self.assertEqual(
            set(sans(bundle.certificate, x509.IPAddress)),
            {ipaddress.ip_address("127.0.0.1"), ipaddress.ip_address("::1")},
        )
        self.assertEqual(
            sans(bundle.certificate, x509.UniformResourceIdentifier),
            ["spiffe://myserver.com/svc"],
        )

    def test_other_san_not_allowed(self):
        request = CertificateRequest(
            common_name="o.myserver.com", other_sans=["1.2.3.4;utf8:nope"]
        )
        self.assertRaisesRegex(BackendError, "not allowed", self.issuer.issue, request)

    def test_custom_mount(self):
        request = CertificateRequest(common_name="m.myserver.com", mount="mount-test-pki")
        bundle = self.issuer.issue(request)
        self.assertEqual(bundle.chain, [self.vault.mounts["mount-test-pki"].ca_cert])
        self.assertNotEqual(bundle.chain, [self.vault.mounts["pki"].ca_cert])
        self.assertEqual(self.last_request()[1], "mount-test-pki/issue/test")

    def test_issuer_default_mount(self):
        issuer = PkiIssuer(self.client, role="test", mount="/mount-test-pki/")
        issuer.issue(CertificateRequest(common_name="m.myserver.com"))
        self.assertEqual(self.last_request()[1], "mount-test-pki/issue/test")

    def test_default_ttl(self):
        bundle = self.issuer.issue(CertificateRequest(common_name="t.myserver.com", ttl=0))
        self.assertNotIn("ttl", self.last_request()[2])
        cert = bundle.certificate
        validity = cert.not_valid_after_utc - cert.not_valid_before_utc
        self.assertGreaterEqual(validity, timedelta(hours=168))
        self.assertLess(validity, timedelta(hours=169))

    def test_requested_ttl(self):
        request = CertificateRequest(common_name="t.myserver.com", ttl=timedelta(hours=1))
        bundle = self.issuer.issue(request)
        self.assertEqual(self.last_request()[2]["ttl"], "1h")
        cert = bundle.certificate
        validity = cert.not_valid_after_utc - cert.not_valid_before_utc
        self.assertGreaterEqual(validity, timedelta(hours=1))
        self.assertLess(validity, timedelta(hours=2))

    def test_issuer_default_ttl(self):
        issuer = PkiIssuer(self.client, role="test", ttl=timedelta(minutes=90))
        issuer.issue(CertificateRequest(common_name="t.myserver.com"))
        self.assertEqual(self.last_request()[2]["ttl"], "90m")

    def test_ttl_exceeded(self):
        request = CertificateRequest(common_name="t.myserver.com", ttl=timedelta(hours=87601))
        with self.assertRaises(TTLExceeded) as cm:
            self.issuer.issue(request)
        self.assertEqual(cm.exception.status, 400)
        self.assertIn("greater than max ttl of 87600h", str(cm.exception))

    def test_unknown_role(self):
        request = CertificateRequest(common_name="a.myserver.com", role="nope")
        self.assertRaisesRegex(BackendError, "unknown role: nope", self.issuer.issue, request)

    def test_no_role(self):
        issuer = PkiIssuer(self.client)
        self.assertRaisesRegex(
            InvalidRequest,
            "no role",
            issuer.issue,
            CertificateRequest(common_name="a.myserver.com"),
        )

    def test_bad_token(self):
        client = BackendClient(TrustConfig(self.server.url, "wrong"))
        issuer = PkiIssuer(client, role="test")
        with self.assertRaises(BackendError) as cm:
            issuer.issue(CertificateRequest(common_name="a.myserver.com"))
        self.assertEqual(cm.exception.status, 403)
        self.assertEqual(cm.exception.errors, ["permission denied"])
        client.close()

    def test_sign_with_local_key(self):
        key = ec.generate_private_key(ec.SECP256R1())
        request = CertificateRequest(common_name="s.myserver.com", dns_sans=["s2.myserver.com"])
        bundle = self.issuer.sign(request, private_key=key)
        self.assertIs(bundle.private_key, key)
        self.assertTrue(public_key_matches(bundle.certificate, key))
        method, path, body, _ = self.last_request()
        self.assertEqual(path, "pki/sign/test")
        self.assertIn("BEGIN CERTIFICATE REQUEST", body["csr"])
        self.assertEqual(
            set(sans(bundle.certificate, x509.DNSName)), {"s.myserver.com", "s2.myserver.com"}
        )

    def test_sign_generates_key(self):
        bundle = self.issuer.sign(CertificateRequest(common_name="g.myserver.com"))
        self.assertIsInstance(bundle.private_key, ec.EllipticCurvePrivateKey)
        self.assertTrue(public_key_matches(bundle.certificate, bundle.private_key))

    def test_cancelled_before_send(self):
        cancel = threading.Event()
        cancel.set()
        count = len(self.vault.requests)
        self.assertRaises(
            Cancelled,
            self.issuer.issue,
            CertificateRequest(common_name="c.myserver.com"),
            cancel=cancel,
        )
        self.assertEqual(len(self.vault.requests), count)

    def test_with_cancel_event_unset(self):
        bundle = self.issuer.issue(
            CertificateRequest(common_name="c.myserver.com"), cancel=threading.Event(), deadline=10
        )
        self.assertEqual(common_name(bundle.certificate), "c.myserver.com")

    def test_concurrent_issue(self):
        results = []

        def issue(i):
            results.append(self.issuer.issue(CertificateRequest(common_name=f"p{i}.myserver.com")))

        threads = [threading.Thread(target=issue, args=(i,)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(
            sorted(common_name(b.certificate) for b in results),
            [f"p{i}.myserver.com" for i in range(4)],
        )

    def test_wait_until_ready(self):
        self.assertTrue(self.issuer.wait_until_ready(timeout=2, interval=0.05))
        issuer = PkiIssuer(self.client, role="test", mount="not-mounted")
        self.assertFalse(issuer.wait_until_ready(timeout=0.2, interval=0.05))


class ClampingBackendTester(unittest.TestCase):
    """ backends that shorten an over-long TTL instead of refusing it """

    @classmethod
    def setUpClass(cls):
        cls.vault = FakeVault.FakeVault(clamp_ttl=True)
        FakeVault.provision(cls.vault)
        cls.vault.mounts["pki"].roles["short"] = {
            "allowed_domains": "myserver.com",
            "allow_subdomains": True,
            "max_ttl": "2h",
        }
        cls.server = FakeVault.Server(cls.vault).__enter__()

    @classmethod
    def tearDownClass(cls):
        cls.server.__exit__(None, None, None)

    def setUp(self):
        self.client = BackendClient(TrustConfig(self.server.url, FakeVault.TOKEN))
        self.issuer = PkiIssuer(self.client, role="test")

    def tearDown(self):
        self.client.close()

    def test_truncation_warning(self):
        request = CertificateRequest(common_name="t.myserver.com", ttl=timedelta(hours=87601))
        with self.assertRaises(TTLExceeded) as cm:
            self.issuer.issue(request)
        self.assertIn("longer than permitted maxTTL", str(cm.exception))

    def test_role_max_ttl(self):
        request = CertificateRequest(
            common_name="t.myserver.com", ttl=timedelta(hours=3), role="short"
        )
        self.assertRaises(TTLExceeded, self.issuer.issue, request)

    def test_within_limits(self):
        request = CertificateRequest(
            common_name="t.myserver.com", ttl=timedelta(hours=2), role="short"
        )
        bundle = self.issuer.issue(request)
        self.assertEqual(bundle.warnings, [])


class CreateIssuerTester(unittest.TestCase):
    def test_create_issuer(self):
        vault = FakeVault.FakeVault()
        FakeVault.provision(vault)
        with FakeVault.Server(vault) as server:
            issuer = vaultissuer.create_issuer(server.url, FakeVault.TOKEN, role="test")
            bundle = issuer.issue(CertificateRequest(common_name="a.myserver.com"))
            issuer.client.close()
        self.assertEqual(common_name(bundle.certificate), "a.myserver.com")


class StalledBackendTester(unittest.TestCase):
    """ a backend that accepts connections but never answers """

    def test_wait_until_ready_keeps_its_timeout(self):
        with FakeVault.StallingServer() as server:
            with BackendClient(TrustConfig(server.url, "t"), timeout=5) as client:
                issuer = PkiIssuer(client, role="test")
                start = time.monotonic()
                self.assertFalse(issuer.wait_until_ready(timeout=0.5, interval=0.1))
                self.assertLess(time.monotonic() - start, 1.5)

    def test_issue_deadline(self):
        with FakeVault.StallingServer(drip=0.1) as server:
            with BackendClient(TrustConfig(server.url, "t")) as client:
                issuer = PkiIssuer(client, role="test")
                start = time.monotonic()
                self.assertRaises(
                    Cancelled,
                    issuer.issue,
                    CertificateRequest(common_name="a.myserver.com"),
                    deadline=0.5,
                )
                self.assertLess(time.monotonic() - start, 1.5)
