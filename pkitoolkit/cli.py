#!/usr/bin/env python3
"""
Command line front end.

    pkitoolkit init    -d example.com
    pkitoolkit issue   -d example.com -cn app.example.com -wc -s "api.example.com"
    pkitoolkit list    [-d example.com]
    pkitoolkit info    -d example.com [-cn app.example.com]
    pkitoolkit verify  -d example.com -cn app.example.com
    pkitoolkit destroy -d example.com [-cn app.example.com] [-y]

Exit codes: 0 success, 1 storage/state failure, 2 bad invocation or input.
"""
import sys
import logging
import argparse

from pydantic import ValidationError

from pkitoolkit.common.config import Settings
from pkitoolkit.common.errors import InputValidationError, PKIError, PolicyError
from pkitoolkit.crypto.policy import CLIENT, PEER, SERVER
from pkitoolkit.toolkit import PKIToolkit

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


# -------------------- ARGUMENTS -------------------- #

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pkitoolkit", description="Root/intermediate CA and leaf certificate issuance")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    parser.add_argument("--resource-dir", help="artifact root (default: $PKI_RESOURCE_DIR or resources/certificate_authority)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init", help="create the signing policy, root CA and intermediate CA of a domain")
    p.add_argument("-d", "--domain", required=True)

    p = sub.add_parser("issue", help="issue a leaf certificate signed by the intermediate CA")
    p.add_argument("-d", "--domain", required=True)
    p.add_argument("-cn", "--commonname", required=True, help="common name, e.g. app.example.com")
    p.add_argument("-wc", "--wildcard", action="store_true", help="add *.<commonname> to the hosts")
    p.add_argument("-s", "--sans", default="", help='comma separated SANs, e.g. "a.example.com,b.example.com"')
    p.add_argument("--profile", default=SERVER, choices=[SERVER, CLIENT, PEER])
    p.add_argument("--overwrite", action="store_true", help="remove an existing certificate (and key) first")
    p.add_argument("-y", "--yes", action="store_true", help="do not ask before overwriting")

    p = sub.add_parser("list", help="list domains, or the leaf certificates of a domain")
    p.add_argument("-d", "--domain")

    p = sub.add_parser("info", help="show subjects, serials and validity")
    p.add_argument("-d", "--domain", required=True)
    p.add_argument("-cn", "--commonname")

    p = sub.add_parser("verify", help="verify the chain of a leaf certificate")
    p.add_argument("-d", "--domain", required=True)
    p.add_argument("-cn", "--commonname", required=True)

    p = sub.add_parser("destroy", help="remove a leaf certificate, or every artifact of a domain")
    p.add_argument("-d", "--domain", required=True)
    p.add_argument("-cn", "--commonname")
    p.add_argument("-y", "--yes", action="store_true", help="do not ask for confirmation")
    return parser


def confirm(prompt: str) -> bool:
    try:
        answer = input(f"{prompt} (y/N): ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


# -------------------- COMMANDS -------------------- #

def cmd_init(toolkit: PKIToolkit, args) -> int:
    root, intermediate = toolkit.bootstrap(args.domain)
    print(f"✓ Root CA:         {root.certificate.common_name}")
    print(f"✓ Intermediate CA: {intermediate.certificate.common_name}")
    print(f"  Artifacts under {toolkit.store.domain_dir(args.domain)}")
    return EXIT_OK


def cmd_issue(toolkit: PKIToolkit, args) -> int:
    overwrite = args.overwrite
    if overwrite and not args.yes:
        leaves = toolkit.store.list_leaves(args.domain)
        if args.commonname.strip().lower() in leaves and not confirm(
                f"Certificate for {args.commonname} exists. Remove it and issue a new one?"):
            print("❌ Aborted, existing certificate kept")
            return EXIT_FAILURE

    result = toolkit.issue_leaf(
        args.domain, args.commonname,
        wildcard=args.wildcard, sans=args.sans, profile=args.profile, overwrite=overwrite,
    )
    cert = result.certificate
    if result.newly_issued:
        print(f"✓ Issued {cert.common_name} (serial {cert.serial_number:x})")
    else:
        print(f"✓ {cert.common_name} already issued, nothing to do (use --overwrite to replace)")
    print(f"  Hosts:      {', '.join(cert.hosts)}")
    print(f"  Valid until {cert.not_after.isoformat()}")
    for name in ("cert", "key", "full_chain", "short_chain"):
        print(f"  {name:<11} {result.artifacts[name]}")
    return EXIT_OK


def cmd_list(toolkit: PKIToolkit, args) -> int:
    if args.domain:
        items = toolkit.store.list_leaves(args.domain)
        label = f"Leaf certificates for {args.domain}"
    else:
        items = toolkit.store.list_domains()
        label = f"Domains under {toolkit.store.root_dir}"
    print(f"{label}:")
    for item in items:
        print(f"  - {item}")
    if not items:
        print("  (none)")
    return EXIT_OK


def cmd_info(toolkit: PKIToolkit, args) -> int:
    summary = toolkit.describe(args.domain)
    if not summary["authorities"]:
        print(f"❌ No certificate authority for {summary['domain']}, run 'pkitoolkit init -d {summary['domain']}'")
        return EXIT_FAILURE

    if args.commonname:
        cn = args.commonname.strip().lower()
        entries = {cn: summary["leaves"].get(cn)}
        if entries[cn] is None:
            print(f"❌ No certificate for {cn} under {summary['domain']}")
            return EXIT_FAILURE
    else:
        for role, entry in summary["authorities"].items():
            _print_entry(role, entry)
        entries = summary["leaves"]
        if summary["profiles"]:
            print(f"Signing profiles: {', '.join(summary['profiles'])}")

    for cn, entry in entries.items():
        _print_entry(cn, entry)
    return EXIT_OK


def _print_entry(name: str, entry: dict):
    print(f"{name}:")
    if entry.get("status") == "pending":
        print("  status:     pending (CSR stored, no certificate)")
        return
    print(f"  subject:    {entry['subject']}")
    print(f"  issuer:     {entry['issuer']}")
    print(f"  serial:     {entry['serial']}")
    print(f"  valid:      {entry['not_before']} -> {entry['not_after']} ({entry['validity']})")
    if entry["hosts"]:
        print(f"  hosts:      {', '.join(entry['hosts'])}")
    print(f"  sha256:     {entry['fingerprint']}")


def cmd_verify(toolkit: PKIToolkit, args) -> int:
    bundle = toolkit.verify_leaf(args.domain, args.commonname)
    print(f"✓ Chain of {bundle.leaf.common_name} verified ({len(bundle)} certificates)")
    for position, cert in enumerate(bundle):
        print(f"  [{position}] {cert.common_name}")
    return EXIT_OK


def cmd_destroy(toolkit: PKIToolkit, args) -> int:
    target = args.commonname or f"the whole domain {args.domain}"
    if not args.yes and not confirm(f"Remove every artifact of {target}?"):
        print("❌ Aborted")
        return EXIT_FAILURE
    toolkit.destroy(args.domain, args.commonname, confirm=True)
    print(f"✓ Removed {target}")
    return EXIT_OK


COMMANDS = {
    "init": cmd_init,
    "issue": cmd_issue,
    "list": cmd_list,
    "info": cmd_info,
    "verify": cmd_verify,
    "destroy": cmd_destroy,
}


# -------------------- ENTRY POINT -------------------- #

def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = Settings.from_env(resource_dir=args.resource_dir)
    except ValidationError as e:
        print(f"❌ Invalid configuration: {e}")
        return EXIT_USAGE

    try:
        toolkit = PKIToolkit(settings)
        return COMMANDS[args.command](toolkit, args)
    except (InputValidationError, PolicyError) as e:
        print(f"❌ {e.message}")
        return EXIT_USAGE
    except PKIError as e:
        print(f"❌ {e.message}")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
