"""
Request middleware chain for calls to authorization server endpoints.

Each middleware wraps the next one and may decorate the request (a DPoP proof
header, a client assertion form field) or ask for the request to be replayed by
returning a third tuple element. `ChainMiddlewareContext` drives the replays and
refuses to go past `attempt_max` attempts.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
import re
from types import TracebackType
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generator,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Union,
)
import logging
from urllib.parse import urlsplit
from aiohttp import ClientResponse, ClientSession, hdrs
from aiohttp.typedefs import StrOrURL
from multidict import CIMultiDictProxy
from jwcrypto import jwk

from social.graze.atoauth.atproto.jwt import CLIENT_ASSERTION_TYPE
from social.graze.atoauth.atproto.keys import KeyManager

RequestFunc = Callable[..., Awaitable[ClientResponse]]

logger = logging.getLogger(__name__)

DPOP_NONCE_HEADER = "DPoP-Nonce"

_WWW_AUTHENTICATE_NONCE = re.compile(r'error\s*=\s*"?use_dpop_nonce"?')


class _LoggerStub(Protocol):
    """_Logger defines which methods logger object should have."""

    @abstractmethod
    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        pass

    @abstractmethod
    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        pass

    @abstractmethod
    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        pass


_LoggerType = Union[_LoggerStub, logging.Logger]


class ChainAttemptsExceeded(Exception):
    """The chain asked for more replays than the context allows."""

    def __init__(self, attempts: int, chain_response: "ChainResponse") -> None:
        super().__init__(f"Gave up after {attempts} attempts")
        self.attempts = attempts
        self.chain_response = chain_response


@dataclass
class ChainRequest:
    method: str
    url: StrOrURL
    headers: dict[str, Any] | None = None
    trace_request_ctx: dict[str, Any] | None = None
    kwargs: dict[str, Any] | None = None

    @staticmethod
    def from_chain_request(request: "ChainRequest") -> "ChainRequest":
        return ChainRequest(
            method=request.method,
            url=request.url,
            headers=request.headers,
            trace_request_ctx=request.trace_request_ctx,
            kwargs=request.kwargs,
        )


@dataclass
class ChainResponse:
    status: int
    headers: CIMultiDictProxy[str]
    body: str | bytes | dict[str, Any] | None = None

    @staticmethod
    async def from_aiohttp_response(response: ClientResponse) -> "ChainResponse":
        status = response.status
        headers = response.headers

        content_type = response.headers.get(hdrs.CONTENT_TYPE, "")

        if content_type.startswith("application/json"):
            return ChainResponse(
                status=status, headers=headers, body=await response.json()
            )
        elif content_type.startswith("text/"):
            return ChainResponse(
                status=status, headers=headers, body=await response.text()
            )
        else:
            return ChainResponse(
                status=status, headers=headers, body=await response.read()
            )

    def body_matches_kv(self, key: str, value: Any) -> bool:
        if self.body is None:
            return False

        return (
            isinstance(self.body, dict) and key in self.body and self.body[key] == value
        )

    def body_get(self, key: str) -> Optional[Any]:
        if isinstance(self.body, dict):
            return self.body.get(key, None)
        return None

    def is_dpop_nonce_challenge(self) -> bool:
        if self.status == 400 and self.body_matches_kv("error", "use_dpop_nonce"):
            return True
        if self.status == 401:
            www_authenticate = self.headers.get(hdrs.WWW_AUTHENTICATE, "")
            return (
                www_authenticate.lower().startswith("dpop")
                and _WWW_AUTHENTICATE_NONCE.search(www_authenticate) is not None
            )
        return False


NextChainResponseCallbackType = (
    Tuple[ClientResponse, ChainResponse]
    | Tuple[ClientResponse, ChainResponse, ChainRequest]
)

NextChainCallbackType = Callable[
    [ChainRequest], Awaitable[NextChainResponseCallbackType]
]


class RequestMiddlewareBase(ABC):
    @abstractmethod
    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        pass

    def handle_gen(self, next: NextChainCallbackType) -> NextChainCallbackType:
        async def next_invoke(request: ChainRequest) -> NextChainResponseCallbackType:
            return await self.handle(next, request)

        return next_invoke


class GenerateClaimAssertionMiddleware(RequestMiddlewareBase):
    """Adds a freshly signed `private_key_jwt` client assertion to the form body.

    A new assertion (and `jti`) is signed on every attempt, replays included.
    """

    def __init__(
        self,
        key_manager: KeyManager,
        client_id: str,
        audience: str,
        expires_in: int = 60,
    ) -> None:
        super().__init__()
        self._key_manager = key_manager
        self._client_id = client_id
        self._audience = audience
        self._expires_in = expires_in

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        if request.kwargs is None:
            request.kwargs = {}

        data: Dict[str, Any] = dict(request.kwargs.get("data", None) or {})
        data["client_assertion_type"] = CLIENT_ASSERTION_TYPE
        data["client_assertion"] = self._key_manager.sign_client_assertion(
            self._client_id, self._audience, expires_in=self._expires_in
        )
        request.kwargs["data"] = data

        return await next(request)


class DpopNonceStore:
    """Last DPoP nonce seen per server origin."""

    def __init__(self) -> None:
        self._nonces: Dict[str, str] = {}

    @staticmethod
    def _origin(url: StrOrURL) -> str:
        parts = urlsplit(str(url))
        return f"{parts.scheme}://{parts.netloc}"

    def get(self, url: StrOrURL) -> Optional[str]:
        return self._nonces.get(self._origin(url))

    def set(self, url: StrOrURL, nonce: str) -> None:
        self._nonces[self._origin(url)] = nonce


class GenerateDpopMiddleware(RequestMiddlewareBase):
    """Signs a DPoP proof for each attempt and answers `use_dpop_nonce` challenges.

    The server's `DPoP-Nonce` header is remembered per origin; when a response is
    a nonce challenge carrying a new nonce, the request is handed back for a
    replay with a proof that includes it.
    """

    def __init__(
        self,
        key_manager: KeyManager,
        dpop_key: jwk.JWK,
        nonces: Optional[DpopNonceStore] = None,
        access_token: Optional[str] = None,
    ) -> None:
        super().__init__()
        self._key_manager = key_manager
        self._dpop_key = dpop_key
        self._nonces = nonces if nonces is not None else DpopNonceStore()
        self._access_token = access_token

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        sent_nonce = self._nonces.get(request.url)
        proof = self._key_manager.sign_dpop_proof(
            self._dpop_key,
            request.method,
            str(request.url),
            nonce=sent_nonce,
            access_token=self._access_token,
        )

        if request.headers is None:
            request.headers = {}
        request.headers["DPoP"] = proof

        response = await next(request)
        client_response = response[0]
        chain_response = response[1]
        new_request = None
        if len(response) == 3:
            new_request = response[2]

        received_nonce = chain_response.headers.get(DPOP_NONCE_HEADER, None)
        if received_nonce:
            self._nonces.set(request.url, received_nonce)

        if chain_response.is_dpop_nonce_challenge():
            logger.debug("DPoP nonce challenge from %s", request.url)
            if received_nonce and received_nonce != sent_nonce and new_request is None:
                new_request = ChainRequest.from_chain_request(request)

        if new_request is None:
            return client_response, chain_response
        return client_response, chain_response, new_request


class EndOfLineChainMiddleware:
    def __init__(self, request_func: RequestFunc, logger: _LoggerType) -> None:
        super().__init__()
        self._request_func = request_func
        self._logger = logger

    async def handle(self, request: ChainRequest) -> NextChainResponseCallbackType:

        self._logger.debug(f"Making request: {request.method} {request.url}")

        response: ClientResponse = await self._request_func(
            request.method.lower(),
            request.url,
            headers=request.headers,
            trace_request_ctx={
                **(request.trace_request_ctx or {}),
            },
            **(request.kwargs or {}),
        )

        return response, await ChainResponse.from_aiohttp_response(response)


class ChainMiddlewareContext:
    def __init__(
        self,
        chain_callback: NextChainCallbackType,
        chain_request: ChainRequest,
        logger: _LoggerType,
        attempt_max: int = 2,
    ) -> None:
        self._chain_callback = chain_callback
        self._chain_request = chain_request
        self._logger = logger

        self._chain_response: ChainResponse | None = None
        self.client_response: ClientResponse | None = None

        self._attempt_max = attempt_max

    async def _do_request(self) -> Tuple[ClientResponse, ChainResponse]:
        current_attempt = 0

        chain_request = self._chain_request

        while True:
            current_attempt += 1

            if current_attempt > self._attempt_max:
                assert self._chain_response is not None
                raise ChainAttemptsExceeded(self._attempt_max, self._chain_response)

            self._logger.debug(
                f"Attempt {current_attempt} out of {self._attempt_max}"
            )

            response = await self._chain_callback(chain_request)
            client_response = response[0]
            chain_response = response[1]
            new_request = None
            if len(response) == 3:
                new_request = response[2]

            self._chain_response = chain_response
            self.client_response = client_response

            if new_request is None:
                return client_response, chain_response

            chain_request = new_request

    def __await__(self) -> Generator[Any, None, Tuple[ClientResponse, ChainResponse]]:
        return self.__aenter__().__await__()

    async def __aenter__(self) -> Tuple[ClientResponse, ChainResponse]:
        return await self._do_request()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self.client_response is not None and not self.client_response.closed:
            self.client_response.close()


class ChainMiddlewareClient:
    def __init__(
        self,
        client_session: ClientSession,
        logger: _LoggerType | None = None,
        middleware: Sequence[RequestMiddlewareBase] | None = None,
        attempt_max: int = 2,
    ) -> None:
        self._middleware = middleware
        self._client = client_session
        self._logger: _LoggerType = logger or logging.getLogger("aiohttp_chain")
        self._attempt_max = attempt_max

    def post(self, url: StrOrURL, **kwargs: Any) -> ChainMiddlewareContext:
        chain_request = ChainRequest(
            method=hdrs.METH_POST,
            url=url,
            headers=kwargs.pop("headers", {}),
            trace_request_ctx=kwargs.pop("trace_request_ctx", None),
            kwargs=kwargs,
        )

        end_of_line_middleware = EndOfLineChainMiddleware(
            request_func=self._client.request,
            logger=self._logger,
        )

        chain_callback: NextChainCallbackType = end_of_line_middleware.handle

        full_middleware_chain = reversed(self._middleware or [])

        for mw in full_middleware_chain:
            chain_callback = mw.handle_gen(chain_callback)

        return ChainMiddlewareContext(
            chain_callback=chain_callback,
            chain_request=chain_request,
            logger=self._logger,
            attempt_max=self._attempt_max,
        )
