#!/usr/bin/env python3
"""
Artifact store: file layout, permissions, reload, idempotency guards and removal.
"""

import sys
import os
# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import json
import stat
import datetime
import threading

import pytest

from pkitoolkit.common.errors import ArtifactMissing, InputValidationError, InvalidHost, LockTimeout, StorageError
from pkitoolkit.crypto.ca import AuthorityState, CertificateAuthority
from pkitoolkit.crypto.chain import ChainAssembler
from pkitoolkit.crypto.csr import CertificateRequest, CertificateRequestBuilder
from pkitoolkit.storage.store import CAStore, make_authority_id, split_authority_id

ROOT_ID = "example.com/root_ca"
INT_ID = "example.com/intermediate_ca"


@pytest.fixture
def store(tmp_path):
    return CAStore(str(tmp_path / "certificate_authority"), lock_timeout=0.5)


@pytest.fixture
def stored_hierarchy(store, new_key, make_subject, policy):
    builder = CertificateRequestBuilder()
    root_csr = builder.build(make_subject("Root CA for example.com"), new_key(), is_ca=True,
                             ca_expiry=datetime.timedelta(hours=87600))
    store.save_request(ROOT_ID, root_csr)
    root = CertificateAuthority.create_root(ROOT_ID, root_csr, domain="example.com")
    store.save(root, root_csr.key, root.certificate)

    int_csr = builder.build(make_subject("Intermediate CA for example.com"), new_key(), is_ca=True,
                            ca_expiry=datetime.timedelta(hours=43800))
    store.save_request(INT_ID, int_csr)
    intermediate = CertificateAuthority.create_intermediate(INT_ID, int_csr, root, policy.resolve("intermediate_ca"))
    store.save(intermediate, int_csr.key, intermediate.certificate)
    return root, intermediate


def test_authority_ids():
    assert make_authority_id("Example.COM", "root_ca") == ROOT_ID
    assert split_authority_id(INT_ID) == ("example.com", "intermediate_ca")
    for bad in ("example.com", "example.com/leaf", "bad_domain/root_ca", "*.example.com/root_ca"):
        with pytest.raises(InputValidationError):
            split_authority_id(bad)


def test_layout_and_permissions(store, stored_hierarchy):
    root_dir = os.path.join(store.root_dir, "example.com", "root_ca")
    assert sorted(f for f in os.listdir(root_dir) if not f.startswith(".")) == [
        "root_ca-key.pem", "root_ca.csr", "root_ca.pem", "root_ca_csr.json",
    ]
    key_mode = stat.S_IMODE(os.stat(os.path.join(root_dir, "root_ca-key.pem")).st_mode)
    assert key_mode == 0o600
    with open(os.path.join(root_dir, "root_ca_csr.json")) as f:
        doc = json.load(f)
    assert doc["CN"] == "Root CA for example.com"
    assert doc["ca"] == {"expiry": "87600h"}


def test_load_authorities(store, stored_hierarchy):
    root, intermediate = stored_hierarchy
    loaded = store.load(INT_ID)
    assert loaded.state == AuthorityState.ACTIVE
    assert loaded.certificate.serial_number == intermediate.certificate.serial_number
    assert loaded.parent.certificate.serial_number == root.certificate.serial_number
    assert loaded.certificate.issuer.fingerprint == root.certificate.fingerprint
    assert loaded.key.public_pem() == intermediate.key.public_pem()


def test_request_is_never_overwritten(store, stored_hierarchy, new_key, make_subject):
    assert store.has_request(ROOT_ID)
    with open(os.path.join(store.authority_dir(ROOT_ID), "root_ca-key.pem"), "rb") as f:
        before = f.read()
    csr = CertificateRequestBuilder().build(make_subject("Root CA for example.com"), new_key(), is_ca=True)
    with pytest.raises(StorageError):
        store.save_request(ROOT_ID, csr)
    with open(os.path.join(store.authority_dir(ROOT_ID), "root_ca-key.pem"), "rb") as f:
        assert f.read() == before

    reloaded = store.load_request(ROOT_ID)
    assert reloaded.is_ca
    assert reloaded.key.public_pem() == stored_hierarchy[0].key.public_pem()


def test_missing_authority(store):
    assert not store.exists(ROOT_ID)
    with pytest.raises(ArtifactMissing) as exc:
        store.load(ROOT_ID)
    assert isinstance(exc.value, StorageError)


def test_malformed_document(store, stored_hierarchy):
    with open(os.path.join(store.authority_dir(ROOT_ID), "root_ca_csr.json"), "w") as f:
        f.write("{not json")
    with pytest.raises(StorageError):
        store.load_request(ROOT_ID)


def test_policy_file(store, policy):
    assert not store.has_policy("example.com")
    store.save_policy("example.com", policy)
    with open(store.policy_path("example.com")) as f:
        data = json.load(f)
    assert set(data["signing"]["profiles"]) == {"intermediate_ca", "peer", "server", "client"}
    assert store.load_policy("example.com").names() == policy.names()


def test_leaf_round_trip(store, stored_hierarchy, leaf_request, policy):
    _, intermediate = stored_hierarchy
    cn = "app.example.com"
    store.save_leaf_request(INT_ID, cn, leaf_request)
    assert store.has_leaf_request(INT_ID, cn)
    assert not store.exists_leaf(INT_ID, cn)

    leaf = intermediate.sign(leaf_request, policy.resolve("server"))
    full = ChainAssembler().assemble(leaf, include_root=True)
    short = ChainAssembler().assemble(leaf, include_root=False)
    store.save_leaf(INT_ID, cn, leaf, full, short)

    assert store.exists_leaf(INT_ID, cn)
    paths = store.leaf_artifacts(INT_ID, cn)
    with open(paths["full_chain"], "rb") as f:
        assert f.read() == full.to_pem()
    with open(paths["short_chain"], "rb") as f:
        assert f.read() == short.to_pem()
    assert stat.S_IMODE(os.stat(paths["key"]).st_mode) == 0o600

    loaded = store.load_leaf(INT_ID, cn, issuer=intermediate.certificate)
    assert loaded.serial_number == leaf.serial_number
    assert store.load_leaf_key(INT_ID, cn).public_pem() == leaf_request.key.public_pem()
    assert store.load_leaf_request(INT_ID, cn).hosts == leaf_request.hosts


def test_leaf_needs_stored_key(store, stored_hierarchy, leaf_request, policy):
    _, intermediate = stored_hierarchy
    leaf = intermediate.sign(leaf_request, policy.resolve("server"))
    chain = ChainAssembler().assemble(leaf)
    with pytest.raises(ArtifactMissing):
        store.save_leaf(INT_ID, "app.example.com", leaf, chain, chain)


def test_listing_skips_lock_dirs(store, stored_hierarchy, leaf_request):
    store.save_leaf_request(INT_ID, "app.example.com", leaf_request)
    with store.lock("example.com", "app.example.com"):
        assert store.list_domains() == ["example.com"]
        assert store.list_leaves("example.com") == ["app.example.com"]


def test_destroy_requires_confirmation(store, stored_hierarchy, leaf_request):
    store.save_leaf_request(INT_ID, "app.example.com", leaf_request)
    with pytest.raises(StorageError):
        store.destroy_leaf(INT_ID, "app.example.com")
    assert store.has_leaf_request(INT_ID, "app.example.com")

    store.destroy_leaf(INT_ID, "app.example.com", confirm=True)
    assert store.list_leaves("example.com") == []
    assert store.exists(INT_ID)

    with pytest.raises(StorageError):
        store.destroy_domain("example.com")
    store.destroy_domain("example.com", confirm=True)
    assert store.list_domains() == []


def test_destroy_waits_for_held_locks(store, stored_hierarchy):
    acquired, release = threading.Event(), threading.Event()

    def holder():
        with store.lock("example.com", "intermediate_ca"):
            acquired.set()
            release.wait(5)

    t = threading.Thread(target=holder)
    t.start()
    try:
        assert acquired.wait(5)
        with pytest.raises(LockTimeout):
            store.destroy_domain("example.com", confirm=True)
        assert os.path.isdir(os.path.join(store.root_dir, "example.com", ".locks", "intermediate_ca.lock"))
        assert store.exists(INT_ID)
    finally:
        release.set()
        t.join()

    store.destroy_domain("example.com", confirm=True)
    assert not os.path.exists(os.path.join(store.root_dir, "example.com"))


def test_request_encoding_failure_writes_nothing(store, new_key, make_subject, monkeypatch):
    csr = CertificateRequestBuilder().build(make_subject("Root CA for example.com"), new_key(), is_ca=True,
                                            ca_expiry=datetime.timedelta(hours=87600))

    def broken(self):
        raise ValueError("cannot encode")
    monkeypatch.setattr(CertificateRequest, "to_pem", broken)

    with pytest.raises(ValueError):
        store.save_request(ROOT_ID, csr)
    root_dir = os.path.join(store.root_dir, "example.com", "root_ca")
    assert not os.path.exists(os.path.join(root_dir, "root_ca-key.pem"))
    assert not store.has_request(ROOT_ID)


def test_invalid_domain(store):
    with pytest.raises(InvalidHost):
        store.domain_dir("../etc")
