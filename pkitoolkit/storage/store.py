"""
Filesystem artifact store for authorities and leaf certificates.

Layout (one tree per domain):

    <root>/<domain>/ca-config.json
    <root>/<domain>/root_ca/{root_ca_csr.json, root_ca.csr, root_ca.pem, root_ca-key.pem}
    <root>/<domain>/intermediate_ca/{intermediate_ca_csr.json, ...}
    <root>/<domain>/<common_name>/{leaf_cert_csr.json, leaf_cert.csr, leaf_cert.pem, leaf_cert-key.pem,
                                   leaf_intermediate_root_chain.pem, leaf_intermediate_chain.pem}

An authority id is "<domain>/<role>" with role root_ca or intermediate_ca.
A request (key + CSR) that exists on disk is reused, never regenerated.
"""
import os
import shutil
import logging
import tempfile
from contextlib import ExitStack, contextmanager
from typing import List, Optional, Tuple

from pydantic import ValidationError

from pkitoolkit.common.documents import CaConfigDocument, CsrDocument
from pkitoolkit.common.errors import ArtifactMissing, InputValidationError, InvalidHost, PKIError, StorageError
from pkitoolkit.crypto.ca import CertificateAuthority, IssuedCertificate
from pkitoolkit.crypto.chain import TrustChainBundle
from pkitoolkit.crypto.csr import CertificateRequest, is_valid_dns_name, normalize_host
from pkitoolkit.crypto.keys import KeyPair, load_private_key
from pkitoolkit.crypto.policy import SigningPolicyStore
from pkitoolkit.storage.locking import authority_lock

LOGGER = logging.getLogger(__name__)

ROOT_CA = "root_ca"
INTERMEDIATE_CA = "intermediate_ca"
ROLES = (ROOT_CA, INTERMEDIATE_CA)
LEAF = "leaf_cert"
CA_CONFIG = "ca-config.json"
FULL_CHAIN = "leaf_intermediate_root_chain.pem"
SHORT_CHAIN = "leaf_intermediate_chain.pem"
LOCKS = ".locks"


def make_authority_id(domain: str, role: str) -> str:
    return f"{normalize_host(domain)}/{role}"


def split_authority_id(authority_id: str) -> Tuple[str, str]:
    domain, sep, role = authority_id.partition("/")
    if not sep or role not in ROLES or not is_valid_dns_name(domain) or domain.startswith("*."):
        raise InputValidationError(f"Invalid authority id '{authority_id}'", value=authority_id)
    return domain, role


class CAStore:
    def __init__(self, root_dir: str, lock_timeout: float = 10.0):
        self.root_dir = root_dir
        self.lock_timeout = lock_timeout

    # -------------------- paths -------------------- #

    def domain_dir(self, domain: str) -> str:
        domain = normalize_host(domain)
        if not is_valid_dns_name(domain) or domain.startswith("*."):
            raise InvalidHost(f"Invalid domain '{domain}'", value=domain)
        return os.path.join(self.root_dir, domain)

    def authority_dir(self, authority_id: str) -> str:
        domain, role = split_authority_id(authority_id)
        return os.path.join(self.domain_dir(domain), role)

    def _authority_paths(self, authority_id: str) -> dict:
        _, role = split_authority_id(authority_id)
        base = self.authority_dir(authority_id)
        return _artifact_paths(base, role)

    def leaf_dir(self, authority_id: str, common_name: str) -> str:
        domain, _ = split_authority_id(authority_id)
        cn = normalize_host(common_name)
        if not is_valid_dns_name(cn):
            raise InvalidHost(f"Invalid common name '{common_name}'", value=common_name)
        return os.path.join(self.domain_dir(domain), cn)

    def _leaf_paths(self, authority_id: str, common_name: str) -> dict:
        base = self.leaf_dir(authority_id, common_name)
        paths = _artifact_paths(base, LEAF)
        paths["full_chain"] = os.path.join(base, FULL_CHAIN)
        paths["short_chain"] = os.path.join(base, SHORT_CHAIN)
        return paths

    def policy_path(self, domain: str) -> str:
        return os.path.join(self.domain_dir(domain), CA_CONFIG)

    # -------------------- locking -------------------- #

    @contextmanager
    def lock(self, domain: str, name: str = "_domain"):
        """Per-authority (or per-leaf) mutual exclusion across threads and processes."""
        lock_dir = os.path.join(self.domain_dir(domain), LOCKS, f"{name}.lock")
        with authority_lock(lock_dir, self.lock_timeout):
            yield

    @contextmanager
    def _authority_lock(self, authority_id: str):
        domain, role = split_authority_id(authority_id)
        with self.lock(domain, role):
            yield

    @contextmanager
    def _leaf_lock(self, authority_id: str, common_name: str):
        domain, _ = split_authority_id(authority_id)
        with self.lock(domain, normalize_host(common_name)):
            yield

    # -------------------- policy -------------------- #

    def has_policy(self, domain: str) -> bool:
        return os.path.isfile(self.policy_path(domain))

    def save_policy(self, domain: str, policy: SigningPolicyStore):
        with self.lock(domain):
            _write(self.policy_path(domain), policy.to_document().to_json().encode())
        LOGGER.info("CA configuration file %s created.", self.policy_path(domain))

    def load_policy(self, domain: str) -> SigningPolicyStore:
        doc = _read_document(self.policy_path(domain), CaConfigDocument)
        return SigningPolicyStore.from_document(doc)

    # -------------------- authorities -------------------- #

    def exists(self, authority_id: str) -> bool:
        p = self._authority_paths(authority_id)
        return os.path.isfile(p["cert"]) and os.path.isfile(p["key"])

    def has_request(self, authority_id: str) -> bool:
        return _has_request(self._authority_paths(authority_id))

    def save_request(self, authority_id: str, csr: CertificateRequest):
        with self._authority_lock(authority_id):
            _save_request(self._authority_paths(authority_id), csr)
        LOGGER.info("CSR for %s stored.", authority_id)

    def load_request(self, authority_id: str) -> CertificateRequest:
        return _load_request(self._authority_paths(authority_id))

    def save(self, authority: CertificateAuthority, keypair: KeyPair, certificate: IssuedCertificate):
        """Persist an authority's key (if not yet stored) and its certificate."""
        p = self._authority_paths(authority.authority_id)
        with self._authority_lock(authority.authority_id):
            if not os.path.isfile(p["key"]):
                _write(p["key"], keypair.private_pem(), private=True)
            _write(p["cert"], certificate.to_pem())
        LOGGER.info("%s certificate stored at %s", authority.authority_id, p["cert"])

    def load(self, authority_id: str, parent: Optional[CertificateAuthority] = None) -> CertificateAuthority:
        """Load an ACTIVE authority; an intermediate pulls in its root unless parent is given."""
        domain, role = split_authority_id(authority_id)
        p = self._authority_paths(authority_id)
        if not self.exists(authority_id):
            raise ArtifactMissing(f"Authority '{authority_id}' not found under {self.authority_dir(authority_id)}",
                                  value=authority_id)
        if role == INTERMEDIATE_CA and parent is None:
            parent = self.load(make_authority_id(domain, ROOT_CA))
        key = _load_key(p["key"])
        issuer = parent.certificate if parent is not None else None
        profile = None if role == ROOT_CA else INTERMEDIATE_CA
        certificate = IssuedCertificate.from_pem(_read(p["cert"]), issuer=issuer, profile_name=profile)
        try:
            return CertificateAuthority.from_stored(authority_id, key, certificate, domain=domain, parent=parent)
        except PKIError as e:
            raise StorageError(f"Stored authority '{authority_id}' is inconsistent: {e.message}",
                               value=authority_id) from e

    # -------------------- leaf certificates -------------------- #

    def exists_leaf(self, authority_id: str, common_name: str) -> bool:
        p = self._leaf_paths(authority_id, common_name)
        return os.path.isfile(p["cert"]) and os.path.isfile(p["key"])

    def has_leaf_request(self, authority_id: str, common_name: str) -> bool:
        return _has_request(self._leaf_paths(authority_id, common_name))

    def save_leaf_request(self, authority_id: str, common_name: str, csr: CertificateRequest):
        with self._leaf_lock(authority_id, common_name):
            _save_request(self._leaf_paths(authority_id, common_name), csr)
        LOGGER.info("Leaf CSR for %s stored.", common_name)

    def load_leaf_request(self, authority_id: str, common_name: str) -> CertificateRequest:
        return _load_request(self._leaf_paths(authority_id, common_name))

    def save_leaf(self, authority_id: str, common_name: str, certificate: IssuedCertificate,
                  full_chain: TrustChainBundle, short_chain: TrustChainBundle):
        """Write both chain bundles, then the leaf certificate. The key is already stored with the CSR."""
        p = self._leaf_paths(authority_id, common_name)
        with self._leaf_lock(authority_id, common_name):
            if not os.path.isfile(p["key"]):
                raise ArtifactMissing(f"Private key for '{common_name}' missing at {p['key']}", value=common_name)
            # certificate last: its presence marks a completed issuance
            _write(p["full_chain"], full_chain.to_pem())
            _write(p["short_chain"], short_chain.to_pem())
            _write(p["cert"], certificate.to_pem())
        LOGGER.info("Leaf certificate and chains for %s stored.", common_name)

    def load_leaf(self, authority_id: str, common_name: str,
                  issuer: Optional[IssuedCertificate] = None) -> IssuedCertificate:
        p = self._leaf_paths(authority_id, common_name)
        if not os.path.isfile(p["cert"]):
            raise ArtifactMissing(f"Certificate for '{common_name}' not found", value=common_name)
        return IssuedCertificate.from_pem(_read(p["cert"]), issuer=issuer)

    def load_leaf_key(self, authority_id: str, common_name: str) -> KeyPair:
        return _load_key(self._leaf_paths(authority_id, common_name)["key"])

    def leaf_artifacts(self, authority_id: str, common_name: str) -> dict:
        return dict(self._leaf_paths(authority_id, common_name))

    # -------------------- listing / removal -------------------- #

    def list_domains(self) -> List[str]:
        if not os.path.isdir(self.root_dir):
            return []
        return sorted(
            d for d in os.listdir(self.root_dir)
            if os.path.isdir(os.path.join(self.root_dir, d)) and not d.startswith(".")
        )

    def list_leaves(self, domain: str) -> List[str]:
        base = self.domain_dir(domain)
        if not os.path.isdir(base):
            return []
        return sorted(
            d for d in os.listdir(base)
            if d not in ROLES and not d.startswith(".") and os.path.isdir(os.path.join(base, d))
        )

    def destroy_leaf(self, authority_id: str, common_name: str, confirm: bool = False):
        """Remove every artifact of a leaf (key, CSR, certificate, chains)."""
        if not confirm:
            raise StorageError(f"Refusing to remove '{common_name}' without confirmation", value=common_name)
        base = self.leaf_dir(authority_id, common_name)
        with self._leaf_lock(authority_id, common_name):
            _rmtree(base)
        LOGGER.info("Removed leaf artifacts for %s", common_name)

    def destroy_domain(self, domain: str, confirm: bool = False):
        """Remove everything stored for a domain. Fails with LockTimeout while any of its locks is held."""
        if not confirm:
            raise StorageError(f"Refusing to remove domain '{domain}' without confirmation", value=domain)
        base = self.domain_dir(domain)
        locks = os.path.join(base, LOCKS)
        lock_dir = os.path.join(self.root_dir, LOCKS, f"{normalize_host(domain)}.lock")
        with authority_lock(lock_dir, self.lock_timeout), ExitStack() as held:
            names = {"_domain", ROOT_CA, INTERMEDIATE_CA}
            if os.path.isdir(locks):
                names.update(n[: -len(".lock")] for n in os.listdir(locks) if n.endswith(".lock"))
            for name in sorted(names):
                held.enter_context(self.lock(domain, name))
            # lock directories stay until they are released
            for entry in os.listdir(base):
                if entry != LOCKS:
                    _remove(os.path.join(base, entry))
        for path in (locks, base):
            try:
                os.rmdir(path)
            except FileNotFoundError:
                pass
            except OSError:
                LOGGER.warning("Could not remove %s", path)
        LOGGER.info("Removed all artifacts for domain %s", domain)


# -------------------- helpers -------------------- #

def _artifact_paths(base: str, stem: str) -> dict:
    return {
        "dir": base,
        "csr_json": os.path.join(base, f"{stem}_csr.json"),
        "csr": os.path.join(base, f"{stem}.csr"),
        "cert": os.path.join(base, f"{stem}.pem"),
        "key": os.path.join(base, f"{stem}-key.pem"),
    }


def _has_request(p: dict) -> bool:
    return os.path.isfile(p["csr_json"]) and os.path.isfile(p["key"])


def _save_request(p: dict, csr: CertificateRequest):
    if _has_request(p):
        raise StorageError(f"Request already stored at {p['csr_json']}", value=p["csr_json"])
    # encode before the first write, then key first: a CSR document on disk always has its key next to it
    key_pem = csr.key.private_pem()
    csr_pem = csr.to_pem()
    document = csr.to_document().to_json().encode()
    _write(p["key"], key_pem, private=True)
    _write(p["csr"], csr_pem)
    _write(p["csr_json"], document)


def _load_request(p: dict) -> CertificateRequest:
    doc = _read_document(p["csr_json"], CsrDocument)
    key = _load_key(p["key"])
    return CertificateRequest.from_document(doc, key)


def _load_key(path: str) -> KeyPair:
    data = _read(path)
    try:
        return load_private_key(data)
    except (ValueError, TypeError) as e:
        raise StorageError(f"Cannot parse private key {path}: {e}", value=path) from e


def _read(path: str) -> bytes:
    try:
        with open(path, "rb") as f:
            return f.read()
    except FileNotFoundError as e:
        raise ArtifactMissing(f"Artifact not found: {path}", value=path) from e
    except OSError as e:
        raise StorageError(f"Cannot read {path}: {e}", value=path) from e


def _read_document(path: str, model):
    data = _read(path)
    try:
        return model.model_validate_json(data)
    except ValidationError as e:
        raise StorageError(f"Malformed document {path}: {e}", value=path) from e


def _write(path: str, data: bytes, private: bool = False):
    """Atomic write: temp file in the same directory, then os.replace."""
    directory = os.path.dirname(path)
    try:
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=directory, prefix=".tmp-")
        try:
            os.fchmod(fd, 0o600 if private else 0o644)
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
    except OSError as e:
        raise StorageError(f"Cannot write {path}: {e}", value=path) from e


def _rmtree(path: str):
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        raise StorageError(f"Cannot remove {path}: {e}", value=path) from e


def _remove(path: str):
    if os.path.isdir(path) and not os.path.islink(path):
        _rmtree(path)
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        raise StorageError(f"Cannot remove {path}: {e}", value=path) from e
