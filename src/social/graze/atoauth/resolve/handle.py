"""AT Protocol handle and DID resolution utilities.

Resolves AT Protocol handles to DIDs using DNS TXT records and HTTPS well-known
endpoints, then resolves DIDs (did:plc and did:web) to DID documents and the
Personal Data Server (PDS) endpoint they advertise.
"""

import asyncio
from enum import IntEnum
import logging
import re
from typing import Any, Dict, List, Optional
from urllib.parse import unquote, urlparse

from aiohttp import ClientError, ClientSession
from pydantic import BaseModel, ConfigDict, Field, ValidationError
import sentry_sdk

from social.graze.atoauth.atproto.errors import (
    InvalidIdentifier,
    NoServiceEndpoint,
    ResolutionFailure,
)
from social.graze.atoauth.resolve.cache import CachedResolver
from social.graze.atoauth.resolve.dns import DnsTxtResolver

logger = logging.getLogger(__name__)

DEFAULT_PLC_DIRECTORY_URL = "https://plc.directory"

HANDLE_CACHE_TTL = 10 * 60
HANDLE_CACHE_CAPACITY = 1000
DID_CACHE_TTL = 60 * 60
DID_CACHE_CAPACITY = 50 * 1024 * 1024 // 500

HANDLE_PATTERN = re.compile(
    r"^([a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+"
    r"[a-zA-Z]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$"
)
DID_PATTERN = re.compile(r"^did:[a-z]+:[a-zA-Z0-9._:%-]*[a-zA-Z0-9._-]$")
DID_PLC_PATTERN = re.compile(r"^did:plc:[a-z2-7]{24}$")
DID_WEB_PATTERN = re.compile(r"^did:web:[a-zA-Z0-9._%-]+(:[a-zA-Z0-9._%-]+)*$")


class SubjectType(IntEnum):
    """AT Protocol subject type enumeration.

    Identifies whether a subject is a DID, a handle requiring resolution, or
    the URL of a server the user will pick an account on.
    """

    did_method_plc = 1
    did_method_web = 2
    hostname = 3
    service = 4


class ParsedSubject(BaseModel):
    """Parsed AT Protocol subject input.

    Contains the classified subject type and normalized subject string.
    """

    subject_type: SubjectType
    subject: str


class DidDocument(BaseModel):
    """The parts of a DID document the OAuth flow relies on."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    also_known_as: List[str] = Field(default_factory=list, alias="alsoKnownAs")
    service: List[Dict[str, Any]] = Field(default_factory=list)


class ResolvedSubject(BaseModel):
    """Resolved AT Protocol subject with all identifiers.

    Contains DID, handle (when the document declares one), and PDS endpoint.
    """

    did: str
    handle: Optional[str] = None
    pds: str


def is_valid_handle(value: str) -> bool:
    return len(value) <= 253 and HANDLE_PATTERN.match(value) is not None


def is_valid_did(value: str) -> bool:
    return len(value) <= 2048 and DID_PATTERN.match(value) is not None


def parse_input(subject: str) -> ParsedSubject:
    """Parse and classify AT Protocol subject input.

    Normalizes input by removing prefixes and classifies as DID, handle, or
    service URL.

    Args:
        subject: Raw subject string (handle, DID, URL, or prefixed)

    Returns:
        ParsedSubject with type and normalized string

    Raises:
        InvalidIdentifier: If the input is not syntactically valid
    """
    if subject is None:
        raise InvalidIdentifier("No identifier provided")

    subject = subject.strip()

    if subject.startswith("https://") or subject.startswith("http://"):
        parsed = urlparse(subject)
        if not parsed.hostname or parsed.query or parsed.fragment:
            raise InvalidIdentifier(f"Invalid service URL: {subject}")
        return ParsedSubject(
            subject_type=SubjectType.service,
            subject=f"{parsed.scheme}://{parsed.netloc}",
        )

    subject = subject.removeprefix("at://")
    subject = subject.removeprefix("@")

    if subject.startswith("did:"):
        if not is_valid_did(subject):
            raise InvalidIdentifier(f"Invalid DID: {subject}")
        if subject.startswith("did:plc:"):
            if DID_PLC_PATTERN.match(subject) is None:
                raise InvalidIdentifier(f"Invalid did:plc identifier: {subject}")
            return ParsedSubject(subject_type=SubjectType.did_method_plc, subject=subject)
        elif subject.startswith("did:web:"):
            if DID_WEB_PATTERN.match(subject) is None:
                raise InvalidIdentifier(f"Invalid did:web identifier: {subject}")
            return ParsedSubject(subject_type=SubjectType.did_method_web, subject=subject)
        raise InvalidIdentifier(f"Unsupported DID method: {subject}")

    if not is_valid_handle(subject):
        raise InvalidIdentifier(f"Invalid handle: {subject}")

    return ParsedSubject(subject_type=SubjectType.hostname, subject=subject.lower())


async def resolve_handle_dns(txt_resolver: DnsTxtResolver, handle: str) -> Optional[str]:
    """Resolve AT Protocol handle to DID using DNS TXT record.

    Queries _atproto.{handle} TXT record and extracts DID from did= prefix.
    More than one distinct DID is treated as no answer.

    Args:
        txt_resolver: TXT lookup implementation
        handle: AT Protocol handle to resolve

    Returns:
        DID string if found, None if the record is missing or ambiguous
    """
    results = await txt_resolver.resolve_txt(f"_atproto.{handle}")
    dids = {
        result.removeprefix("did=")
        for result in results
        if result.startswith("did=")
    }
    if len(dids) != 1:
        return None
    did = dids.pop()
    return did if is_valid_did(did) else None


async def resolve_handle_http(session: ClientSession, handle: str) -> Optional[str]:
    """Resolve AT Protocol handle to DID using HTTPS well-known endpoint.

    Fetches DID from https://{handle}/.well-known/atproto-did endpoint.

    Args:
        session: HTTP client session
        handle: AT Protocol handle to resolve

    Returns:
        DID string if found, None if the endpoint has no usable answer
    """
    async with session.get(f"https://{handle}/.well-known/atproto-did") as resp:
        if resp.status != 200:
            return None
        body = await resp.text()
        if body is None:
            return None
        did = body.strip()
        return did if is_valid_did(did) else None


async def resolve_handle(
    session: ClientSession,
    txt_resolver: DnsTxtResolver,
    handle: str,
    use_well_known: bool = True,
) -> str:
    """Resolve AT Protocol handle to DID using DNS and HTTPS concurrently.

    Attempts both DNS TXT and HTTPS well-known resolution, preferring DNS.

    Raises:
        ResolutionFailure: If neither method yields a DID
    """
    lookups = [resolve_handle_dns(txt_resolver, handle)]
    if use_well_known:
        lookups.append(resolve_handle_http(session, handle))

    results = await asyncio.gather(*lookups, return_exceptions=True)

    timed_out = False
    for result in results:
        if isinstance(result, BaseException):
            if isinstance(result, asyncio.TimeoutError):
                timed_out = True
            logger.warning("Handle lookup for %s failed: %r", handle, result)
            sentry_sdk.capture_exception(result)

    for result in results:
        if isinstance(result, str):
            return result

    raise ResolutionFailure(f"Unable to resolve handle {handle}", timed_out=timed_out)


def handle_predicate(value: str) -> bool:
    """Check if value is an AT Protocol handle reference.

    Args:
        value: String to check

    Returns:
        True if value starts with at:// prefix
    """
    return value is not None and value.startswith("at://")


def pds_predicate(value: Dict[str, Any]) -> bool:
    """Check if service entry is an AT Protocol PDS.

    Args:
        value: Service dictionary from DID document

    Returns:
        True if service is the #atproto_pds AtprotoPersonalDataServer with
        a string endpoint
    """
    return (
        value is not None
        and value.get("type", None) == "AtprotoPersonalDataServer"
        and str(value.get("id", "")).endswith("#atproto_pds")
        and isinstance(value.get("serviceEndpoint", None), str)
    )


def document_handle(document: DidDocument) -> Optional[str]:
    handle = next(filter(handle_predicate, document.also_known_as), None)
    if handle is None:
        return None
    return handle.removeprefix("at://").lower()


def document_pds(document: DidDocument) -> str:
    """Return the single PDS endpoint declared by a DID document.

    Raises:
        NoServiceEndpoint: If the document has no PDS entry or more than one
    """
    services = list(filter(pds_predicate, document.service))
    if len(services) == 0:
        raise NoServiceEndpoint(f"DID document for {document.id} declares no PDS")
    if len(services) > 1:
        raise NoServiceEndpoint(f"DID document for {document.id} declares multiple PDS entries")
    return services[0]["serviceEndpoint"].rstrip("/")


async def fetch_did_document(session: ClientSession, url: str, did: str) -> DidDocument:
    try:
        async with session.get(url) as resp:
            if resp.status == 404:
                raise ResolutionFailure(f"DID {did} not found")
            if resp.status != 200:
                raise ResolutionFailure(f"DID resolution for {did} returned {resp.status}")
            body = await resp.json(content_type=None)
    except asyncio.TimeoutError as e:
        raise ResolutionFailure(f"DID resolution for {did} timed out", timed_out=True) from e
    except (ClientError, ValueError) as e:
        raise ResolutionFailure(f"DID resolution for {did} failed: {e}") from e

    try:
        document = DidDocument.model_validate(body)
    except ValidationError as e:
        raise ResolutionFailure(f"Malformed DID document for {did}") from e

    if document.id != did:
        raise ResolutionFailure(f"DID document id {document.id} does not match {did}")
    return document


async def resolve_did_method_plc(
    plc_directory_url: str, session: ClientSession, did: str
) -> DidDocument:
    """Resolve did:plc DID to its document via the PLC directory."""
    return await fetch_did_document(
        session, f"{plc_directory_url.rstrip('/')}/{did}", did
    )


async def resolve_did_method_web(session: ClientSession, did: str) -> DidDocument:
    """Resolve did:web DID to its document.

    Constructs the did.json URL from the DID; a bare host resolves through
    /.well-known/did.json.
    """

    parts = [unquote(part) for part in did.removeprefix("did:web:").split(":")]

    if len(parts) == 1:
        parts.append(".well-known")

    url = "https://{inner}/did.json".format(inner="/".join(parts))
    return await fetch_did_document(session, url, did)


async def resolve_did(
    session: ClientSession, plc_directory_url: str, did: str
) -> DidDocument:
    """Resolve DID to its document.

    Routes to appropriate resolver based on DID method (plc or web).
    """
    if did.startswith("did:plc:"):
        return await resolve_did_method_plc(plc_directory_url, session, did)
    elif did.startswith("did:web:"):
        return await resolve_did_method_web(session, did)
    raise ResolutionFailure(f"Unsupported DID method: {did}")


class IdentityResolver:
    """Resolves handles and DIDs to a DID, handle and PDS endpoint.

    Handle and DID lookups are cached (10 minutes and 1 hour respectively)
    and concurrent lookups of the same key share one request.
    """

    def __init__(
        self,
        session: ClientSession,
        txt_resolver: DnsTxtResolver,
        plc_directory_url: str = DEFAULT_PLC_DIRECTORY_URL,
        use_well_known: bool = True,
    ) -> None:
        self._session = session
        self._txt_resolver = txt_resolver
        self._plc_directory_url = plc_directory_url
        self._use_well_known = use_well_known
        self._handles: CachedResolver[str, str] = CachedResolver(
            self._resolve_handle, HANDLE_CACHE_TTL, HANDLE_CACHE_CAPACITY
        )
        self._documents: CachedResolver[str, DidDocument] = CachedResolver(
            self._resolve_did, DID_CACHE_TTL, DID_CACHE_CAPACITY
        )

    async def _resolve_handle(self, handle: str) -> str:
        return await resolve_handle(
            self._session, self._txt_resolver, handle, self._use_well_known
        )

    async def _resolve_did(self, did: str) -> DidDocument:
        return await resolve_did(self._session, self._plc_directory_url, did)

    async def resolve_handle(self, handle: str) -> str:
        return await self._handles.resolve(handle)

    async def resolve_did_document(self, did: str) -> DidDocument:
        return await self._documents.resolve(did)

    async def resolve(self, subject: str) -> ResolvedSubject:
        """Resolve a handle or DID to its DID, handle and PDS endpoint.

        Raises:
            InvalidIdentifier: If the subject is malformed or a service URL
            ResolutionFailure: If a lookup fails or the handle is not
                confirmed by the DID document
            NoServiceEndpoint: If the DID document has no usable PDS entry
        """
        parsed_subject = parse_input(subject)
        if parsed_subject.subject_type == SubjectType.service:
            raise InvalidIdentifier(f"{subject} is a service URL, not an account identifier")

        if parsed_subject.subject_type == SubjectType.hostname:
            did = await self.resolve_handle(parsed_subject.subject)
        else:
            did = parsed_subject.subject

        document = await self.resolve_did_document(did)
        handle = document_handle(document)

        if parsed_subject.subject_type == SubjectType.hostname and handle != parsed_subject.subject:
            raise ResolutionFailure(
                f"Handle {parsed_subject.subject} is not confirmed by the DID document for {did}"
            )

        return ResolvedSubject(did=did, handle=handle, pds=document_pds(document))
