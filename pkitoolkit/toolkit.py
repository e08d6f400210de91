"""
End-to-end issuance: policy -> root CA -> intermediate CA -> leaf certificate.

Every step is idempotent. An artifact that is already on disk is loaded, a
stored request (key + CSR) without a certificate is resumed, and nothing is
generated twice.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Tuple, Union

from pkitoolkit.common.config import Settings
from pkitoolkit.common.errors import InvalidHost
from pkitoolkit.common.utils import format_expiry
from pkitoolkit.crypto.ca import CertificateAuthority, IssuedCertificate
from pkitoolkit.crypto.chain import ChainAssembler, TrustChainBundle, verify_chain
from pkitoolkit.crypto.csr import (
    CertificateRequest, CertificateRequestBuilder, SubjectInfo, check_country, check_host, normalize_host,
    parse_sans,
)
from pkitoolkit.crypto.keys import KeyMaterialGenerator, KeyPair, key_parameters
from pkitoolkit.crypto.policy import INTERMEDIATE_CA as INTERMEDIATE_PROFILE, SERVER, SigningPolicyStore
from pkitoolkit.storage.store import INTERMEDIATE_CA, ROOT_CA, CAStore, make_authority_id

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuanceResult:
    certificate: IssuedCertificate
    key: KeyPair = field(repr=False)
    full_chain: TrustChainBundle
    short_chain: TrustChainBundle
    reused_request: bool = False     # key + CSR came from disk
    newly_issued: bool = True        # False: certificate already existed
    artifacts: Dict[str, str] = field(default_factory=dict)


class PKIToolkit:
    def __init__(self, settings: Settings, store: Optional[CAStore] = None,
                 keygen: Optional[KeyMaterialGenerator] = None):
        # settings built with model_copy skip validation; fail before anything touches disk
        key_parameters(settings.key_algo, settings.key_size)
        check_country(settings.country)
        self.settings = settings
        self.store = store or CAStore(settings.resource_dir, lock_timeout=settings.lock_timeout)
        self.keygen = keygen or KeyMaterialGenerator()
        self.assembler = ChainAssembler()

    # -------------------- subjects -------------------- #

    def _subject(self, common_name: str, organization: str, unit: str) -> SubjectInfo:
        return SubjectInfo(
            common_name=common_name,
            organization=organization,
            organizational_unit=unit,
            country=self.settings.country,
            state=self.settings.state,
            locality=self.settings.locality,
        )

    def root_subject(self, domain: str) -> SubjectInfo:
        return self._subject(
            f"Root CA for {domain}",
            f"Root CA Organization for {domain}",
            f"Root CA Organization Unit for {domain}",
        )

    def intermediate_subject(self, domain: str) -> SubjectInfo:
        return self._subject(
            f"Intermediate CA for {domain}",
            f"Intermediate CA Organization for {domain}",
            f"Intermediate CA Organization Unit for {domain}",
        )

    def leaf_subject(self, common_name: str) -> SubjectInfo:
        return self._subject(
            common_name,
            f"Wildcard Leaf Certificate Organization for {common_name}",
            f"Wildcard Leaf Certificate Organization Unit for {common_name}",
        )

    def _new_key(self) -> KeyPair:
        return self.keygen.generate(self.settings.key_algo, self.settings.key_size)

    # -------------------- policy -------------------- #

    def default_policy(self) -> SigningPolicyStore:
        return SigningPolicyStore(self.settings.leaf_validity, self.settings.int_ca_validity)

    def policy(self, domain: str) -> SigningPolicyStore:
        """The stored policy of a domain, or the default one if none is stored yet."""
        if self.store.has_policy(domain):
            return self.store.load_policy(domain)
        return self.default_policy()

    def ensure_policy(self, domain: str) -> SigningPolicyStore:
        domain = _domain(domain)
        with self.store.lock(domain):
            if self.store.has_policy(domain):
                LOGGER.info("%s is available, skipping creation.", self.store.policy_path(domain))
                return self.store.load_policy(domain)
            policy = self.default_policy()
            self.store.save_policy(domain, policy)
            return policy

    # -------------------- authorities -------------------- #

    def ensure_root(self, domain: str) -> CertificateAuthority:
        domain = _domain(domain)
        aid = make_authority_id(domain, ROOT_CA)
        with self.store.lock(domain, ROOT_CA):
            if self.store.exists(aid):
                LOGGER.info("root_ca.pem and root_ca-key.pem available, skipping creation.")
                return self.store.load(aid)
            csr = self._authority_request(aid, self.root_subject(domain), self.settings.root_ca_validity)
            root = CertificateAuthority.create_root(aid, csr, domain=domain)
            self.store.save(root, csr.key, root.certificate)
            return root

    def ensure_intermediate(self, domain: str) -> CertificateAuthority:
        domain = _domain(domain)
        policy = self.ensure_policy(domain)
        root = self.ensure_root(domain)
        aid = make_authority_id(domain, INTERMEDIATE_CA)
        with self.store.lock(domain, INTERMEDIATE_CA):
            if self.store.exists(aid):
                LOGGER.info("intermediate_ca.pem and intermediate_ca-key.pem available, skipping creation.")
                return self.store.load(aid, parent=root)
            csr = self._authority_request(aid, self.intermediate_subject(domain), self.settings.int_ca_validity)
            intermediate = CertificateAuthority.create_intermediate(
                aid, csr, root, policy.resolve(INTERMEDIATE_PROFILE), domain=domain,
            )
            self.store.save(intermediate, csr.key, intermediate.certificate)
            return intermediate

    def bootstrap(self, domain: str) -> Tuple[CertificateAuthority, CertificateAuthority]:
        """Make sure the policy, root and intermediate of a domain exist."""
        intermediate = self.ensure_intermediate(domain)
        return intermediate.parent, intermediate

    def _authority_request(self, aid: str, subject: SubjectInfo, validity) -> CertificateRequest:
        if self.store.has_request(aid):
            LOGGER.info("CSR for %s available, resuming.", aid)
            return self.store.load_request(aid)
        csr = CertificateRequestBuilder().build(subject, self._new_key(), is_ca=True, ca_expiry=validity)
        self.store.save_request(aid, csr)
        return csr

    # -------------------- leaf certificates -------------------- #

    def issue_leaf(self, domain: str, common_name: str, wildcard: bool = False,
                   sans: Union[str, Iterable[str], None] = None, profile: str = SERVER,
                   overwrite: bool = False) -> IssuanceResult:
        """
        Issue (or return the stored) leaf certificate for common_name under domain.

        Input is validated before anything is written. With overwrite=True every
        existing artifact of the leaf is removed first, including its key.
        """
        domain = _domain(domain)
        cn = normalize_host(common_name or "")
        sans = parse_sans(sans) if isinstance(sans, str) else [normalize_host(s) for s in sans or ()]

        builder = CertificateRequestBuilder(domain)
        subject = self.leaf_subject(cn)
        hosts = builder.validate(subject, sans, wildcard=wildcard)
        signing_profile = self.policy(domain).resolve(profile)

        _, intermediate = self.bootstrap(domain)
        aid = intermediate.authority_id
        with self.store.lock(domain, cn):
            if overwrite:
                LOGGER.info("Overwriting artifacts for %s", cn)
                self.store.destroy_leaf(aid, cn, confirm=True)

            if self.store.exists_leaf(aid, cn):
                LOGGER.info("%s certificate available, skipping creation.", cn)
                return self._stored_result(aid, cn, intermediate)

            reused = self.store.has_leaf_request(aid, cn)
            if reused:
                csr = self.store.load_leaf_request(aid, cn)
                if list(csr.hosts) != hosts:
                    LOGGER.warning(
                        "Stored CSR for %s covers %s, not %s; use overwrite to replace it",
                        cn, ", ".join(csr.hosts), ", ".join(hosts),
                    )
            else:
                csr = builder.build(subject, self._new_key(), hosts=sans, wildcard=wildcard)
                self.store.save_leaf_request(aid, cn, csr)

            certificate = intermediate.sign(csr, signing_profile)
            full_chain = self.assembler.assemble(certificate, include_root=True)
            short_chain = self.assembler.assemble(certificate, include_root=False)
            self.store.save_leaf(aid, cn, certificate, full_chain, short_chain)

        return IssuanceResult(
            certificate=certificate,
            key=csr.key,
            full_chain=full_chain,
            short_chain=short_chain,
            reused_request=reused,
            newly_issued=True,
            artifacts=self.store.leaf_artifacts(aid, cn),
        )

    def _stored_result(self, aid: str, cn: str, intermediate: CertificateAuthority) -> IssuanceResult:
        certificate = self.store.load_leaf(aid, cn, issuer=intermediate.certificate)
        return IssuanceResult(
            certificate=certificate,
            key=self.store.load_leaf_key(aid, cn),
            full_chain=self.assembler.assemble(certificate, include_root=True),
            short_chain=self.assembler.assemble(certificate, include_root=False),
            reused_request=True,
            newly_issued=False,
            artifacts=self.store.leaf_artifacts(aid, cn),
        )

    def load_leaf(self, domain: str, common_name: str) -> IssuedCertificate:
        domain = _domain(domain)
        intermediate = self.store.load(make_authority_id(domain, INTERMEDIATE_CA))
        return self.store.load_leaf(intermediate.authority_id, common_name, issuer=intermediate.certificate)

    def verify_leaf(self, domain: str, common_name: str) -> TrustChainBundle:
        """Rebuild the full chain of a stored leaf and verify it. Raises ChainVerificationError."""
        bundle = self.assembler.assemble(self.load_leaf(domain, common_name), include_root=True)
        verify_chain(bundle)
        return bundle

    def destroy(self, domain: str, common_name: Optional[str] = None, confirm: bool = False):
        domain = _domain(domain)
        if common_name:
            aid = make_authority_id(domain, INTERMEDIATE_CA)
            self.store.destroy_leaf(aid, common_name, confirm=confirm)
        else:
            self.store.destroy_domain(domain, confirm=confirm)

    # -------------------- reporting -------------------- #

    def describe(self, domain: str) -> dict:
        """Summary of a domain's authorities and leaf certificates."""
        domain = _domain(domain)
        summary = {"domain": domain, "authorities": {}, "leaves": {}, "profiles": []}
        if self.store.has_policy(domain):
            summary["profiles"] = self.store.load_policy(domain).names()

        intermediate = None
        for role in (ROOT_CA, INTERMEDIATE_CA):
            aid = make_authority_id(domain, role)
            if not self.store.exists(aid):
                continue
            ca = self.store.load(aid)
            summary["authorities"][role] = _cert_summary(ca.certificate)
            if role == INTERMEDIATE_CA:
                intermediate = ca

        for cn in self.store.list_leaves(domain):
            if intermediate is None or not self.store.exists_leaf(intermediate.authority_id, cn):
                summary["leaves"][cn] = {"status": "pending"}
                continue
            cert = self.store.load_leaf(intermediate.authority_id, cn, issuer=intermediate.certificate)
            summary["leaves"][cn] = dict(_cert_summary(cert), status="issued")
        return summary


def _domain(domain: str) -> str:
    domain = normalize_host(domain or "")
    check_host(domain)
    if domain.startswith("*."):
        raise InvalidHost(f"Invalid domain '{domain}': wildcards are only allowed in leaf hosts", value=domain)
    return domain


def _cert_summary(cert: IssuedCertificate) -> dict:
    return {
        "subject": cert.subject.rfc4514_string(),
        "issuer": cert.certificate.issuer.rfc4514_string(),
        "serial": format(cert.serial_number, "x"),
        "not_before": cert.not_before.isoformat(),
        "not_after": cert.not_after.isoformat(),
        "validity": format_expiry(cert.not_after - cert.not_before),
        "is_ca": cert.is_ca,
        "hosts": list(cert.hosts),
        "fingerprint": cert.fingerprint,
    }
