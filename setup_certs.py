#!/usr/bin/env python3
"""
Bootstrap a local CA hierarchy and issue one server certificate.
Run once, e.g. before starting a TLS test service:

    python setup_certs.py example.com app.example.com
"""

import sys
import logging

from pkitoolkit.common.config import Settings
from pkitoolkit.common.errors import PKIError
from pkitoolkit.toolkit import PKIToolkit


def main():
    domain = sys.argv[1] if len(sys.argv) > 1 else "example.com"
    common_name = sys.argv[2] if len(sys.argv) > 2 else f"app.{domain}"

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    toolkit = PKIToolkit(Settings.from_env())

    print("=" * 60)
    print("Certificate Generation Script")
    print("=" * 60)

    try:
        print(f"\n[1/2] Bootstrapping root and intermediate CA for {domain}...")
        root, intermediate = toolkit.bootstrap(domain)

        print(f"\n[2/2] Issuing server certificate for {common_name}...")
        result = toolkit.issue_leaf(domain, common_name, wildcard=True)
    except PKIError as e:
        print(f"❌ {e.message}")
        return 1

    print("\n" + "=" * 60)
    print("✓ All certificates generated successfully!")
    print("=" * 60)
    print("\nCertificate files:")
    print(f"  - {toolkit.store.authority_dir(root.authority_id)}")
    print(f"  - {toolkit.store.authority_dir(intermediate.authority_id)}")
    for name in ("cert", "key", "full_chain", "short_chain"):
        print(f"  - {result.artifacts[name]}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
