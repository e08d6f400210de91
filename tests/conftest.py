import sys
import os
# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import datetime

import pytest

from pkitoolkit.common.config import Settings
from pkitoolkit.crypto.ca import CertificateAuthority
from pkitoolkit.crypto.csr import CertificateRequestBuilder, SubjectInfo
from pkitoolkit.crypto.keys import KeyMaterialGenerator
from pkitoolkit.crypto.policy import SigningPolicyStore

DOMAIN = "example.com"
ROOT_VALIDITY = datetime.timedelta(hours=87600)
INT_VALIDITY = datetime.timedelta(hours=43800)
LEAF_VALIDITY = datetime.timedelta(hours=8670)


@pytest.fixture(scope="session")
def keygen():
    return KeyMaterialGenerator()


@pytest.fixture
def new_key(keygen):
    """ECDSA keys are cheap; RSA generation is kept to the tests that need it."""
    def _new(algorithm="ecdsa", size="P-256"):
        return keygen.generate(algorithm, size)
    return _new


@pytest.fixture(scope="session")
def rsa_key(keygen):
    return keygen.generate("rsa", 2048)


@pytest.fixture
def make_subject():
    def _subject(cn):
        return SubjectInfo(
            common_name=cn,
            organization=f"Organization for {cn}",
            organizational_unit=f"Organization Unit for {cn}",
            country="US",
            state="California",
            locality="Sunnyvale",
        )
    return _subject


@pytest.fixture
def policy():
    return SigningPolicyStore(LEAF_VALIDITY, INT_VALIDITY)


@pytest.fixture
def build_hierarchy(new_key, make_subject, policy):
    """Factory: a fresh root + intermediate pair for DOMAIN, same subject names every time."""
    def _build(algorithm="ecdsa", size="P-256"):
        builder = CertificateRequestBuilder()
        root_csr = builder.build(make_subject(f"Root CA for {DOMAIN}"), new_key(algorithm, size),
                                 is_ca=True, ca_expiry=ROOT_VALIDITY)
        root = CertificateAuthority.create_root(f"{DOMAIN}/root_ca", root_csr, domain=DOMAIN)
        int_csr = builder.build(make_subject(f"Intermediate CA for {DOMAIN}"), new_key(algorithm, size),
                                is_ca=True, ca_expiry=INT_VALIDITY)
        intermediate = CertificateAuthority.create_intermediate(
            f"{DOMAIN}/intermediate_ca", int_csr, root, policy.resolve("intermediate_ca"),
        )
        return root, intermediate
    return _build


@pytest.fixture
def hierarchy(build_hierarchy):
    return build_hierarchy()


@pytest.fixture
def leaf_request(new_key, make_subject):
    builder = CertificateRequestBuilder(DOMAIN)
    return builder.build(make_subject("app.example.com"), new_key(),
                         hosts=["api.example.com"], wildcard=True)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        resource_dir=str(tmp_path / "certificate_authority"),
        key_algo="ecdsa",
        key_size=256,
        lock_timeout=0.5,
    )
