"""DNS TXT lookups for AT Protocol handle resolution.

Handle resolution only needs TXT records, so the lookup is hidden behind
`DnsTxtResolver`. Deployments without raw DNS sockets use
`DohDnsTxtResolver`, which speaks the DNS-over-HTTPS JSON API offered by
Cloudflare (`https://cloudflare-dns.com/dns-query`) and Google
(`https://dns.google/resolve`). `AiodnsTxtResolver` queries the system
resolver directly.
"""

from abc import ABC, abstractmethod
import logging
import re
from typing import List, Optional

from aiodns import DNSResolver
from aiohttp import ClientSession

logger = logging.getLogger(__name__)

TXT_RECORD_TYPE = 16

_QUOTED = re.compile(r'"((?:[^"\\]|\\.)*)"')


class DnsTxtResolver(ABC):
    @abstractmethod
    async def resolve_txt(self, name: str) -> List[str]:
        """Return the TXT strings published at `name`.

        An empty list means the name exists without TXT data or does not
        exist at all. Transport failures raise.
        """
        pass


def parse_txt_data(data: str) -> str:
    """Join the character-strings of a presentation-format TXT record.

    `"did=did:plc:abc" "123"` becomes `did=did:plc:abc123`. Unquoted data
    is returned as is.
    """
    data = data.strip()
    segments = _QUOTED.findall(data)
    if not segments:
        return data
    return "".join(segment.replace('\\"', '"') for segment in segments)


class DohDnsTxtResolver(DnsTxtResolver):
    def __init__(self, session: ClientSession, service_url: str) -> None:
        self._session = session
        self._service_url = service_url

    async def resolve_txt(self, name: str) -> List[str]:
        async with self._session.get(
            self._service_url,
            params={"name": name, "type": "TXT"},
            headers={"Accept": "application/dns-json"},
        ) as resp:
            if resp.status != 200:
                raise ValueError(f"DNS-over-HTTPS service returned {resp.status}")
            body = await resp.json(content_type=None)

        # NXDOMAIN and friends are answers, not transport errors.
        if body.get("Status", 0) != 0:
            logger.debug("DoH lookup for %s returned status %s", name, body.get("Status"))
            return []

        return [
            parse_txt_data(answer.get("data", ""))
            for answer in body.get("Answer", None) or []
            if answer.get("type") == TXT_RECORD_TYPE
        ]


class AiodnsTxtResolver(DnsTxtResolver):
    def __init__(self, resolver: Optional[DNSResolver] = None) -> None:
        self._resolver = resolver

    async def resolve_txt(self, name: str) -> List[str]:
        if self._resolver is None:
            self._resolver = DNSResolver()
        results = await self._resolver.query(name, "TXT")
        return [
            result.text.decode("utf-8") if isinstance(result.text, bytes) else result.text
            for result in results or []
        ]
