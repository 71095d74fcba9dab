from typing import List
import argparse
import aiohttp
import asyncio
import logging

from social.graze.atoauth.atproto.errors import OAuthClientError
from social.graze.atoauth.resolve.dns import AiodnsTxtResolver, DohDnsTxtResolver
from social.graze.atoauth.resolve.handle import (
    DEFAULT_PLC_DIRECTORY_URL,
    IdentityResolver,
)

logger = logging.getLogger(__name__)


async def realMain() -> None:
    parser = argparse.ArgumentParser(prog="resolve", description="Resolve handles")
    parser.add_argument("subject", nargs="+", help="The subject(s) to resolve.")
    parser.add_argument(
        "--plc-directory-url",
        default=DEFAULT_PLC_DIRECTORY_URL,
        help="The PLC directory to use for resolving did-method-plc DIDs.",
    )
    parser.add_argument(
        "--doh-service-url",
        default=None,
        help="Resolve DNS TXT records through this DNS-over-HTTPS service instead of the system resolver.",
    )

    args = vars(parser.parse_args())

    subjects: List[str] = args.get("subject", [])

    async with aiohttp.ClientSession() as session:
        doh_service_url = args.get("doh_service_url")
        if doh_service_url:
            txt_resolver = DohDnsTxtResolver(session, doh_service_url)
        else:
            txt_resolver = AiodnsTxtResolver()

        resolver = IdentityResolver(session, txt_resolver, args.get("plc_directory_url"))
        for subject in subjects:
            try:
                resolved_subject = await resolver.resolve(subject)
                print(f"resolved_subject {resolved_subject}")
            except OAuthClientError as e:
                print(f"{subject}: {e.error}: {e.message}")
            except Exception:
                logging.exception("Exception resolving subject %s", subject)


def main() -> None:
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
