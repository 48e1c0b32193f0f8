from setuptools import setup, find_packages

# read README:
from os import path
this_directory = path.abspath(path.dirname(__file__))
with open(path.join(this_directory, 'README.rst'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name="vault-pki-issuer",
    version="1.0.0",
    packages=find_packages(exclude=["tests"]),
    python_requires=">=3.9",
    scripts=["bin/vault-issue"],
    install_requires=[
        "requests",
        "cryptography >= 42",
    ],
    extras_require={
        # the test suite runs against an in-process fake backend:
        "tests": [
            "pytest",
            "flask",
        ],
    },
    description="""
        Requests short-lived X.509 certificates from a Vault-style PKI
        secrets engine, over plain or mutually-authenticated TLS.
    """,
    long_description=long_description,
    long_description_content_type='text/x-rst',
    keywords="pki vault x509 certificates tls",
    classifiers=[
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.12",
        "Topic :: Security :: Cryptography",
    ],
)
