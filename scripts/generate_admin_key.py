from __future__ import annotations

import argparse

from sandboxproxy.services.auth.api_keys import generate_secret


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Print a fresh admin secret for ADMIN_API_KEY")
    parser.add_argument("--prefix", default="sk_admin", help="Label prepended to the secret")
    return parser


def main() -> int:
    args = _build_parser().parse_args()
    # Nothing is stored; the operator puts the value into the deployment secret.
    secret = generate_secret(args.prefix)
    print(secret)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
