import argparse
import asyncio
import json
import logging
from typing import List

from jwcrypto import jwk

from social.graze.atoauth.atproto.keys import KeyManager

logger = logging.getLogger(__name__)


def genPrivateKeyPem() -> str:
    """Generate an ES256 private key as PKCS#8 PEM, the format PRIVATE_KEYS expects."""
    key = jwk.JWK.generate(kty="EC", crv="P-256")
    return key.export_to_pem(private_key=True, password=None).decode("utf-8")


async def genKey(inline: bool) -> None:
    pem = genPrivateKeyPem()
    if inline:
        print(pem.strip().replace("\n", "\\n"))
    else:
        print(pem, end="")


async def showJwks(paths: List[str]) -> None:
    pems = []
    for path in paths:
        with open(path, "rb") as fd:
            pems.append(fd.read())
    key_manager = KeyManager.from_pem(pems)
    print(json.dumps(key_manager.public_jwks(), indent=2))


async def realMain() -> None:
    parser = argparse.ArgumentParser(prog="atoauth-util", description="ATOAuth utilities")

    subparsers = parser.add_subparsers(dest="command", required=True)

    gen_key = subparsers.add_parser("gen-key", help="Generate a PKCS#8 PEM ES256 private key")
    gen_key.add_argument(
        "--inline",
        action="store_true",
        help="Print the key on one line, with escaped newlines, for use in PRIVATE_KEYS.",
    )
    show_jwks = subparsers.add_parser(
        "show-jwks", help="Print the public JWKS published for the given PEM files"
    )
    show_jwks.add_argument("paths", nargs="+", help="PEM files, in PRIVATE_KEYS order.")

    args = vars(parser.parse_args())
    command = args.get("command", None)

    if command == "gen-key":
        await genKey(args.get("inline", False))
    elif command == "show-jwks":
        await showJwks(args.get("paths", []))


def main() -> None:
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
