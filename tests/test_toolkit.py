#!/usr/bin/env python3
"""
End-to-end issuance: bootstrap, idempotent re-runs, resume after a partial
issuance, overwrite, and validation before anything touches disk.
"""

import sys
import os
# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import datetime

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from pkitoolkit.common.errors import (
    DomainScopeViolation, InvalidHost, InvalidSubject, UnknownProfile, UnsupportedAlgorithm,
)
from pkitoolkit.toolkit import PKIToolkit

DOMAIN = "example.com"
CN = "app.example.com"


@pytest.fixture
def toolkit(settings):
    return PKIToolkit(settings)


def _read(path):
    with open(path, "rb") as f:
        return f.read()


def test_issue_end_to_end(toolkit):
    result = toolkit.issue_leaf(DOMAIN, CN, wildcard=True, sans="api.example.com")
    cert = result.certificate

    assert result.newly_issued
    assert not result.reused_request
    assert cert.hosts == ["app.example.com", "*.app.example.com", "api.example.com"]
    assert cert.common_name == CN
    assert [c.common_name for c in result.full_chain] == [
        CN, "Intermediate CA for example.com", "Root CA for example.com",
    ]
    assert len(result.short_chain) == 2

    assert _read(result.artifacts["cert"]) == cert.to_pem()
    assert _read(result.artifacts["full_chain"]) == result.full_chain.to_pem()
    assert _read(result.artifacts["short_chain"]) == result.short_chain.to_pem()
    assert toolkit.verify_leaf(DOMAIN, CN).identities() == result.full_chain.identities()


def test_subjects_and_validity(toolkit, settings):
    root, intermediate = toolkit.bootstrap(DOMAIN)
    org = root.certificate.subject.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)[0].value
    assert org == "Root CA Organization for example.com"
    country = intermediate.certificate.subject.get_attributes_for_oid(NameOID.COUNTRY_NAME)[0].value
    assert country == settings.country
    assert root.certificate.not_after - root.certificate.not_before == settings.root_ca_validity
    assert intermediate.certificate.not_after - intermediate.certificate.not_before == settings.int_ca_validity

    leaf = toolkit.issue_leaf(DOMAIN, CN).certificate
    assert leaf.not_after - leaf.not_before == settings.leaf_validity
    unit = leaf.subject.get_attributes_for_oid(NameOID.ORGANIZATIONAL_UNIT_NAME)[0].value
    assert unit == "Wildcard Leaf Certificate Organization Unit for app.example.com"


def test_bootstrap_is_idempotent(toolkit):
    root, intermediate = toolkit.bootstrap(DOMAIN)
    key_path = os.path.join(toolkit.store.authority_dir(root.authority_id), "root_ca-key.pem")
    policy_path = toolkit.store.policy_path(DOMAIN)
    key_before, policy_before = _read(key_path), _read(policy_path)

    root2, intermediate2 = toolkit.bootstrap(DOMAIN)
    assert root2.certificate.serial_number == root.certificate.serial_number
    assert intermediate2.certificate.serial_number == intermediate.certificate.serial_number
    assert _read(key_path) == key_before
    assert _read(policy_path) == policy_before


def test_second_issue_returns_stored_certificate(toolkit):
    first = toolkit.issue_leaf(DOMAIN, CN, wildcard=True)
    key_before = _read(first.artifacts["key"])

    second = toolkit.issue_leaf(DOMAIN, CN, wildcard=True)
    assert not second.newly_issued
    assert second.certificate.serial_number == first.certificate.serial_number
    assert _read(second.artifacts["key"]) == key_before
    assert second.full_chain.identities() == first.full_chain.identities()


def test_partial_issuance_is_resumed(toolkit):
    first = toolkit.issue_leaf(DOMAIN, CN)
    key_before = _read(first.artifacts["key"])
    # CSR stage on disk, certificate lost
    os.remove(first.artifacts["cert"])

    resumed = toolkit.issue_leaf(DOMAIN, CN)
    assert resumed.newly_issued
    assert resumed.reused_request
    assert resumed.certificate.serial_number != first.certificate.serial_number
    assert _read(resumed.artifacts["key"]) == key_before
    cert_key = resumed.certificate.certificate.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    assert cert_key == resumed.key.public_pem()


def test_overwrite_replaces_key(toolkit):
    first = toolkit.issue_leaf(DOMAIN, CN)
    key_before = _read(first.artifacts["key"])

    replaced = toolkit.issue_leaf(DOMAIN, CN, sans=["www.example.com"], overwrite=True)
    assert replaced.newly_issued
    assert not replaced.reused_request
    assert _read(replaced.artifacts["key"]) != key_before
    assert replaced.certificate.hosts == [CN, "www.example.com"]


def test_client_profile(toolkit):
    cert = toolkit.issue_leaf(DOMAIN, "svc.example.com", profile="client").certificate
    eku = cert.certificate.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    assert list(eku) == [ExtendedKeyUsageOID.CLIENT_AUTH]


@pytest.mark.parametrize("kwargs, error", [
    ({"common_name": CN, "sans": "a.b.example.com"}, DomainScopeViolation),
    ({"common_name": "app.example.org"}, DomainScopeViolation),
    ({"common_name": "app.sub.example.com"}, DomainScopeViolation),
    ({"common_name": "bad_name.example.com"}, InvalidHost),
    ({"common_name": " "}, InvalidSubject),
    ({"common_name": CN, "profile": "codesign"}, UnknownProfile),
])
def test_invalid_input_writes_nothing(toolkit, settings, kwargs, error):
    with pytest.raises(error):
        toolkit.issue_leaf(DOMAIN, **kwargs)
    assert not os.path.exists(settings.resource_dir)


@pytest.mark.parametrize("update, error", [
    ({"country": "USA"}, InvalidSubject),
    ({"key_algo": "rsa", "key_size": 1024}, UnsupportedAlgorithm),
])
def test_unvalidated_settings_rejected_before_disk(settings, update, error):
    bad = settings.model_copy(update=update)
    with pytest.raises(error):
        PKIToolkit(bad)
    assert not os.path.exists(settings.resource_dir)


def test_scope_error_names_offending_san(toolkit):
    with pytest.raises(DomainScopeViolation) as exc:
        toolkit.issue_leaf(DOMAIN, CN, sans="ok.example.com, deep.sub.example.com")
    assert exc.value.value == "deep.sub.example.com"


def test_wildcard_domain_is_rejected(toolkit):
    with pytest.raises(InvalidHost):
        toolkit.bootstrap("*.example.com")


def test_describe(toolkit):
    toolkit.issue_leaf(DOMAIN, CN)
    summary = toolkit.describe(DOMAIN)
    assert set(summary["authorities"]) == {"root_ca", "intermediate_ca"}
    assert "CN=Root CA for example.com" in summary["authorities"]["intermediate_ca"]["issuer"]
    assert summary["leaves"][CN]["status"] == "issued"
    assert summary["leaves"][CN]["hosts"] == [CN]
    assert summary["profiles"] == ["client", "intermediate_ca", "peer", "server"]


def test_describe_pending_leaf(toolkit):
    first = toolkit.issue_leaf(DOMAIN, CN)
    os.remove(first.artifacts["cert"])
    assert toolkit.describe(DOMAIN)["leaves"][CN] == {"status": "pending"}


def test_destroy(toolkit):
    toolkit.issue_leaf(DOMAIN, CN)
    toolkit.destroy(DOMAIN, CN, confirm=True)
    assert toolkit.store.list_leaves(DOMAIN) == []
    toolkit.destroy(DOMAIN, confirm=True)
    assert toolkit.store.list_domains() == []


def test_rsa_settings(settings):
    toolkit = PKIToolkit(settings.model_copy(update={"key_algo": "rsa", "key_size": 2048}))
    result = toolkit.issue_leaf(DOMAIN, CN)
    assert result.key.algorithm == "rsa"
    assert result.certificate.not_after - result.certificate.not_before == datetime.timedelta(hours=8670)
