#!/usr/bin/env python3
"""Self-signed server certificates for running the echo target over ``wss://``.

The certificate carries every requested host as a subject alternative name
so one pair serves both ``wss://localhost`` and ``wss://127.0.0.1``.
"""
from __future__ import annotations

import argparse
import ipaddress
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

DEFAULT_HOSTS = ("localhost", "127.0.0.1")
KEY_FILE = "server.key"
CERT_FILE = "server.crt"


@dataclass
class CertificatePair:
    key_pem: bytes
    cert_pem: bytes

    def write(self, outdir: Path) -> Tuple[Path, Path]:
        outdir.mkdir(parents=True, exist_ok=True)
        key_path = outdir / KEY_FILE
        crt_path = outdir / CERT_FILE
        key_path.write_bytes(self.key_pem)
        crt_path.write_bytes(self.cert_pem)
        return key_path, crt_path


def san_entry(host: str) -> x509.GeneralName:
    try:
        return x509.IPAddress(ipaddress.ip_address(host))
    except ValueError:
        return x509.DNSName(host)


def generate_certificate(hosts: Sequence[str] = DEFAULT_HOSTS,
                         days: int = 365,
                         org: str = "syncload",
                         key_size: int = 2048) -> CertificatePair:
    names: List[str] = [h for h in hosts if h]
    if not names:
        raise ValueError("at least one host name is required")
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    subject = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, org),
        x509.NameAttribute(NameOID.COMMON_NAME, names[0]),
    ])
    issued = datetime.now(timezone.utc) - timedelta(minutes=1)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(issued)
        .not_valid_after(issued + timedelta(days=max(1, days)))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(x509.SubjectAlternativeName([san_entry(h) for h in names]), critical=False)
        .sign(private_key=key, algorithm=hashes.SHA256())
    )
    return CertificatePair(
        key_pem=key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        ),
        cert_pem=certificate.public_bytes(serialization.Encoding.PEM),
    )


def write_certificate(outdir: Path,
                      hosts: Sequence[str] = DEFAULT_HOSTS,
                      days: int = 365) -> Tuple[Path, Path]:
    return generate_certificate(hosts, days).write(outdir)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate a self-signed certificate for the syncload echo target",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--host", dest="hosts", action="append",
                        help="Host name or IP to certify (repeatable; default localhost and 127.0.0.1)")
    parser.add_argument("-d", "--days", type=int, default=365, help="Validity days")
    parser.add_argument("-O", "--org", default="syncload", help="Organization name")
    parser.add_argument("-o", "--outdir", type=Path, default=Path("certs"),
                        help=f"Output directory for {KEY_FILE}/{CERT_FILE}")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    pair = generate_certificate(args.hosts or DEFAULT_HOSTS, args.days, args.org)
    key_path, crt_path = pair.write(args.outdir)
    print("generated:")
    print(f"  key:  {key_path}")
    print(f"  cert: {crt_path}")
    print(f"  start the target with: syncload-echo --cert {crt_path} --key {key_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
