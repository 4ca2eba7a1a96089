from __future__ import annotations

import argparse
import base64
import dataclasses
import http.client
import json
import sys
import urllib.parse
from pathlib import Path

if __package__ in (None, ""):
    repo_src = Path(__file__).resolve().parents[1] / "src"
    if str(repo_src) not in sys.path:
        sys.path.insert(0, str(repo_src))

try:
    from hsm_mtls import (
        HsmClientError,
        HsmConfig,
        HsmConfigurationError,
        HsmOperationError,
        HsmTlsClient,
        configure_logging,
        list_signature_algorithms,
        resolve_signature_algorithm,
        verify_signature,
    )
    from hsm_mtls.x509_ops import describe_certificate
except ModuleNotFoundError as exc:
    if exc.name in {"pkcs11", "asn1crypto", "cryptography", "tlslite"}:
        raise SystemExit(
            f"Missing dependency: {exc.name}\n"
            "Install it with:\n"
            "  python3 -m pip install -e ."
        ) from exc
    raise


class _HelpFormatter(
    argparse.RawTextHelpFormatter,
    argparse.ArgumentDefaultsHelpFormatter,
):
    """Keep multiline examples readable and include defaults."""


CLI_HELP_EPILOG = """Environment:
  Required:
    HSM_PKCS11_MODULE
    HSM_USER_PIN
    HSM_KEY_LABEL

  Optional:
    HSM_TOKEN_LABEL or HSM_SLOT     # default: first slot with a token
    HSM_CLIENT_CERT                 # client certificate (chain) PEM/DER
    HSM_TLS_MIN_VERSION=1.2         # 1.2 | 1.3
    HSM_TLS_VERIFY_PEER=true
    HSM_TLS_ALLOW_INSECURE=false    # must be true to disable peer verification
    HSM_TLS_CA_FILE

Examples:
  python3 examples/mtls_credential.py inspect --cert client.pem
  python3 examples/mtls_credential.py sign --cert client.pem --algorithm rsa_pss_rsae_sha256 \\
      --digest-hex 9f86d081884c7d659a2feaa0c55ad015a3bf4f1b2b0b822cd15d6c15b0f00a08
  python3 examples/mtls_credential.py request --cert client.pem https://mtls.example.com/hsm
  python3 examples/mtls_credential.py algorithms
"""

# Distinct exit codes let scripts tell "bad PIN" from "module missing".
EXIT_CODES: dict[str, int] = {
    "configuration": 2,
    "module_load_failed": 10,
    "no_usable_slot": 11,
    "token_not_found": 12,
    "session_open_failed": 13,
    "authentication_failed": 14,
    "key_not_found": 15,
    "sign_failed": 16,
    "key_mismatch": 17,
    "certificate_parse_failed": 18,
    "tls_handshake_failed": 19,
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "Assemble and check a TLS client credential whose private key "
            "stays inside a PKCS#11 HSM."
        ),
        formatter_class=_HelpFormatter,
        epilog=CLI_HELP_EPILOG,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_common(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            "--cert",
            default=None,
            help="Client certificate (chain) file. Defaults to HSM_CLIENT_CERT.",
        )
        sub.add_argument(
            "--key-label",
            default=None,
            help="Private key label. Defaults to HSM_KEY_LABEL.",
        )
        sub.add_argument(
            "--strict-key-lookup",
            action="store_true",
            help="Fail when more than one private key carries the label.",
        )
        sub.add_argument(
            "--skip-self-test",
            action="store_true",
            help="Skip the sign/verify round trip during assembly.",
        )

    inspect_parser = subparsers.add_parser(
        "inspect",
        help="Assemble the credential and print a JSON summary.",
        formatter_class=_HelpFormatter,
    )
    add_common(inspect_parser)

    sign_parser = subparsers.add_parser(
        "sign",
        help="Sign a precomputed digest with the HSM key.",
        formatter_class=_HelpFormatter,
    )
    add_common(sign_parser)
    sign_parser.add_argument("--digest-hex", required=True, help="Digest to sign, hex encoded.")
    sign_parser.add_argument(
        "--algorithm",
        required=True,
        help="Algorithm name or TLS SignatureScheme (name or 0x code point).",
    )

    request_parser = subparsers.add_parser(
        "request",
        help="GET an https URL, authenticating with the HSM-backed certificate.",
        formatter_class=_HelpFormatter,
    )
    add_common(request_parser)
    request_parser.add_argument("url", help="https:// URL to fetch.")
    request_parser.add_argument(
        "--timeout", type=float, default=30.0, help="Socket timeout in seconds."
    )

    subparsers.add_parser(
        "algorithms",
        help="List supported signature algorithm names.",
        formatter_class=_HelpFormatter,
    )
    return parser


def _resolve_config(args: argparse.Namespace) -> HsmConfig:
    config = HsmConfig.from_env()
    overrides: dict[str, object] = {}
    if args.cert:
        overrides["certificate_path"] = args.cert
    if args.key_label:
        overrides["key_label"] = args.key_label
    return dataclasses.replace(config, **overrides) if overrides else config


def _parse_algorithm_hint(value: str) -> str | int:
    if value.lower().startswith("0x"):
        try:
            return int(value, 16)
        except ValueError as exc:
            raise ValueError(f"Invalid SignatureScheme code point: {value}") from exc
    return value


def _open_client(args: argparse.Namespace) -> HsmTlsClient:
    return HsmTlsClient(
        _resolve_config(args),
        self_test=not args.skip_self_test,
        strict_key_lookup=args.strict_key_lookup,
    )


def _run_inspect(args: argparse.Namespace) -> None:
    with _open_client(args) as client:
        tls_config = client.tls_config
        summary = {
            "operation": "inspect",
            "token_label": client.session.token_label,
            "key_label": client.signer.key_label,
            "key_type": client.signer.key_type.name,
            "key_size": client.signer.key_size,
            "chain_length": len(client.credential.certificate_chain),
            "certificate": describe_certificate(client.credential.leaf),
            "tls": {
                "min_version": tls_config.min_version.name,
                "verify_peer": tls_config.verify_peer,
                "check_hostname": tls_config.check_hostname,
            },
        }
    print(json.dumps(summary, indent=2, sort_keys=True))


def _run_sign(args: argparse.Namespace) -> None:
    try:
        digest = bytes.fromhex(args.digest_hex)
    except ValueError as exc:
        raise ValueError("--digest-hex must be valid hexadecimal.") from exc
    algorithm = resolve_signature_algorithm(_parse_algorithm_hint(args.algorithm))

    with _open_client(args) as client:
        signature = client.signer.sign(digest, algorithm)
        verified = verify_signature(client.signer.public_key(), digest, signature, algorithm)

    print(
        json.dumps(
            {
                "operation": "sign",
                "algorithm": algorithm.name,
                "signature_b64": base64.b64encode(signature).decode("ascii"),
                "verified": verified,
            },
            indent=2,
            sort_keys=True,
        )
    )


def _run_request(args: argparse.Namespace) -> None:
    url = urllib.parse.urlsplit(args.url)
    if url.scheme != "https" or not url.hostname:
        raise ValueError("request needs an https:// URL.")
    path = url.path or "/"
    if url.query:
        path = f"{path}?{url.query}"

    with _open_client(args) as client:
        connection = client.https_connection(url.hostname, url.port, timeout=args.timeout)
        try:
            connection.request("GET", path)
            response = connection.getresponse()
            body = response.read()
        finally:
            connection.close()

    print(
        json.dumps(
            {
                "operation": "request",
                "url": args.url,
                "status": response.status,
                "reason": response.reason,
                "body": body.decode("utf-8", errors="replace"),
            },
            indent=2,
            sort_keys=True,
        )
    )


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command == "algorithms":
        print("\n".join(list_signature_algorithms()))
        return 0

    configure_logging()
    try:
        if args.command == "inspect":
            _run_inspect(args)
        elif args.command == "request":
            _run_request(args)
        else:
            _run_sign(args)
        return 0
    except HsmConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CODES["configuration"]
    except HsmOperationError as exc:
        print(f"HSM error [{exc.kind}]: {exc}", file=sys.stderr)
        return EXIT_CODES.get(exc.kind, 1)
    except (HsmClientError, ValueError, OSError, http.client.HTTPException) as exc:
        print(f"mTLS credential CLI error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
