"""
Robinhood REST client

Thin async wrapper over the three Robinhood hosts:
- api.robinhood.com      accounts, positions, quotes, instruments, options, auth
- nummus.robinhood.com   crypto holdings and currency pairs
- phoenix.robinhood.com  unified account totals

Every method is a single idempotent request (or a pagination loop over one
resource). No session state lives here: callers pass the bearer token.

NOTE: these are unofficial endpoints and may change without notice.
"""
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import httpx
from pydantic import BaseModel

from config import Config
from utils.logger import log_api_call
from .errors import RobinhoodAPIError

logger = logging.getLogger(__name__)


class RobinhoodSettings(BaseModel):
    """Connection settings for the Robinhood hosts"""
    api_base: str = "https://api.robinhood.com"
    nummus_base: str = "https://nummus.robinhood.com"
    phoenix_base: str = "https://phoenix.robinhood.com"
    client_id: str = "c82SH0WZOsabOXGP2sxqcj34FxkvfnWRZBKlBjFS"
    api_version: str = "1.431.4"
    request_timeout: float = 30.0

    @classmethod
    def from_config(cls) -> "RobinhoodSettings":
        return cls(
            api_base=Config.ROBINHOOD_API_BASE,
            nummus_base=Config.ROBINHOOD_NUMMUS_BASE,
            phoenix_base=Config.ROBINHOOD_PHOENIX_BASE,
            client_id=Config.ROBINHOOD_CLIENT_ID,
            api_version=Config.ROBINHOOD_API_VERSION,
            request_timeout=Config.ROBINHOOD_REQUEST_TIMEOUT,
        )


# stop_when(page_results) -> True to stop paging after this page
PageStop = Callable[[List[Dict[str, Any]]], bool]


def find_crypto_pair_id(pairs: List[Dict[str, Any]], currency_code: str) -> Optional[str]:
    """Pick the USD trading pair for a currency code out of /currency_pairs/ results"""
    for pair in pairs:
        asset_code = (pair.get("asset_currency") or {}).get("code")
        if asset_code == currency_code or pair.get("symbol") == f"{currency_code}-USD":
            return pair.get("id")
    return None


class RobinhoodClient:
    """
    Robinhood API client

    Usage:
        client = RobinhoodClient()
        positions = await client.get_positions(access_token)
        await client.aclose()

    Pass `http_client` to share a connection pool or to inject an
    httpx.MockTransport in tests.
    """

    def __init__(
        self,
        settings: Optional[RobinhoodSettings] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.settings = settings or RobinhoodSettings()
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=self.settings.request_timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    # ─────────────────────────────────────────────────────────────────────────
    # Transport
    # ─────────────────────────────────────────────────────────────────────────

    def _allowed_origins(self) -> Set[Tuple[str, str, Optional[int]]]:
        bases = (self.settings.api_base, self.settings.nummus_base, self.settings.phoenix_base)
        return {(url.scheme, url.host, url.port) for url in map(httpx.URL, bases)}

    def _resolve_url(self, path_or_url: str, base: Optional[str] = None) -> str:
        """
        Resolve a path against a host, or accept an absolute URL returned by
        the API (pagination `next` links, instrument URLs).

        Absolute URLs must point at one of the configured Robinhood hosts so a
        bearer token is never sent anywhere else.
        """
        if path_or_url.startswith(("http://", "https://")):
            url = httpx.URL(path_or_url)
            if (url.scheme, url.host, url.port) not in self._allowed_origins():
                raise RobinhoodAPIError(f"Refusing to call non-Robinhood host: {url.host}")
            return path_or_url
        return f"{base or self.settings.api_base}{path_or_url}"

    async def _send(
        self,
        method: str,
        path_or_url: str,
        *,
        access_token: Optional[str] = None,
        base: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any
    ) -> httpx.Response:
        url = self._resolve_url(path_or_url, base)
        request_headers = {"Accept": "application/json"}
        if headers:
            request_headers.update(headers)
        if access_token:
            request_headers["Authorization"] = f"Bearer {access_token}"

        start = time.perf_counter()
        try:
            response = await self._http.request(method, url, headers=request_headers, **kwargs)
        except httpx.RequestError as e:
            logger.warning(f"Robinhood request failed: {method} {httpx.URL(url).path} - {type(e).__name__}")
            raise RobinhoodAPIError(f"Robinhood request failed: {e}") from e

        log_api_call(logger, method, httpx.URL(url).path, response.status_code, (time.perf_counter() - start) * 1000)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise RobinhoodAPIError(
                f"Robinhood returned a non-JSON response ({response.status_code})",
                status_code=response.status_code,
                body=response.text[:500],
            ) from e

    async def _request(self, method: str, path_or_url: str, **kwargs: Any) -> Any:
        """Send a request and return the decoded body, raising on non-2xx"""
        response = await self._send(method, path_or_url, **kwargs)
        if not response.is_success:
            text = response.text
            raise RobinhoodAPIError(
                f"Robinhood API error: {response.status_code} - {text or response.reason_phrase}",
                status_code=response.status_code,
                body=text[:500],
            )
        return self._json(response)

    async def _paginate(
        self,
        path: str,
        access_token: str,
        *,
        base: Optional[str] = None,
        stop_when: Optional[PageStop] = None
    ) -> List[Dict[str, Any]]:
        """Follow `next` links until exhausted and concatenate `results`"""
        items: List[Dict[str, Any]] = []
        next_url: Optional[str] = path
        pages = 0

        while next_url:
            page = await self._request("GET", next_url, access_token=access_token, base=base)
            if not isinstance(page, dict):
                raise RobinhoodAPIError(f"Unexpected page shape from {path}")
            results = page.get("results") or []
            items.extend(results)
            pages += 1
            next_url = page.get("next")
            if stop_when and results and stop_when(results):
                break

        logger.debug(f"Fetched {len(items)} items from {path} in {pages} page(s)")
        return items

    # ─────────────────────────────────────────────────────────────────────────
    # Authentication endpoints
    # ─────────────────────────────────────────────────────────────────────────

    async def request_token(
        self,
        form: Dict[str, str],
        challenge_id: Optional[str] = None
    ) -> Tuple[int, Dict[str, Any]]:
        """
        POST credentials to the OAuth token endpoint

        Returns (status_code, body). Non-2xx is not raised: the body carries
        the challenge / workflow / error the login flow must interpret.
        """
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "X-Robinhood-API-Version": self.settings.api_version,
        }
        if challenge_id:
            headers["X-ROBINHOOD-CHALLENGE-RESPONSE-ID"] = challenge_id

        payload = {
            "client_id": self.settings.client_id,
            "grant_type": "password",
            "scope": "internal",
            **form,
        }
        response = await self._send("POST", "/oauth2/token/", headers=headers, data=payload)
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        return response.status_code, body

    async def respond_to_challenge(self, challenge_id: str, code: str) -> Dict[str, Any]:
        """POST an MFA code; the body is returned whatever the status"""
        response = await self._send(
            "POST", f"/challenge/{challenge_id}/respond/", json={"response": code}
        )
        body = self._json(response)
        return body if isinstance(body, dict) else {}

    async def get_prompt_status(self, challenge_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/push/{challenge_id}/get_prompts_status/")

    async def start_verification_workflow(self, device_token: str, workflow_id: str) -> Dict[str, Any]:
        return await self._request(
            "POST",
            "/pathfinder/user_machine/",
            json={"device_id": device_token, "flow": "suv", "input": {"workflow_id": workflow_id}},
        )

    async def get_inquiry(self, inquiry_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/pathfinder/inquiries/{inquiry_id}/user_view/")

    async def continue_inquiry(self, inquiry_id: str) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"/pathfinder/inquiries/{inquiry_id}/user_view/",
            json={"sequence": 0, "user_input": {"status": "continue"}},
        )

    async def revoke_token(self, access_token: str) -> None:
        await self._request(
            "POST",
            "/oauth2/revoke_token/",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            data={"client_id": self.settings.client_id, "token": access_token},
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Accounts / equities
    # ─────────────────────────────────────────────────────────────────────────

    async def get_accounts(self, access_token: str) -> List[Dict[str, Any]]:
        return await self._paginate("/accounts/", access_token)

    async def get_positions(self, access_token: str) -> List[Dict[str, Any]]:
        return await self._paginate("/positions/?nonzero=true", access_token)

    async def get_instrument(self, instrument_url: str, access_token: str) -> Dict[str, Any]:
        return await self._request("GET", instrument_url, access_token=access_token)

    async def get_quote(self, symbol: str, access_token: Optional[str] = None) -> Dict[str, Any]:
        """Quotes are served without authentication too"""
        return await self._request("GET", f"/quotes/{symbol.upper()}/", access_token=access_token)

    async def get_unified_account(self, access_token: str) -> Dict[str, Any]:
        return await self._request(
            "GET",
            "/accounts/unified",
            access_token=access_token,
            base=self.settings.phoenix_base,
            headers={"X-Robinhood-API-Version": self.settings.api_version},
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Crypto
    # ─────────────────────────────────────────────────────────────────────────

    async def get_crypto_holdings(self, access_token: str) -> List[Dict[str, Any]]:
        return await self._paginate("/holdings/", access_token, base=self.settings.nummus_base)

    async def get_currency_pairs(self, access_token: str) -> List[Dict[str, Any]]:
        return await self._paginate("/currency_pairs/", access_token, base=self.settings.nummus_base)

    async def get_crypto_pair_id(self, currency_code: str, access_token: str) -> Optional[str]:
        """
        Resolve a currency code (e.g. "BTC") to its USD trading pair id

        Quotes are keyed by the trading pair id, NOT the currency id. Using
        the currency id returns nothing and silently prices a holding at 0.
        """
        pairs = await self.get_currency_pairs(access_token)
        return find_crypto_pair_id(pairs, currency_code)

    async def get_crypto_quote(self, pair_id: str, access_token: str) -> Dict[str, Any]:
        return await self._request("GET", f"/marketdata/forex/quotes/{pair_id}/", access_token=access_token)

    # ─────────────────────────────────────────────────────────────────────────
    # Options
    # ─────────────────────────────────────────────────────────────────────────

    async def get_option_positions(self, access_token: str) -> List[Dict[str, Any]]:
        return await self._paginate("/options/positions/?nonzero=true", access_token)

    async def get_option_instrument(self, option_url: str, access_token: str) -> Dict[str, Any]:
        return await self._request("GET", option_url, access_token=access_token)

    async def get_option_market_data(self, option_url: str, access_token: str) -> Optional[Dict[str, Any]]:
        """Market data for one option; the endpoint answers with a bare object or a results list"""
        data = await self._request(
            "GET", "/marketdata/options/", access_token=access_token, params={"instruments": option_url}
        )
        if isinstance(data, dict) and "results" in data:
            results = [r for r in (data.get("results") or []) if r]
            return results[0] if results else None
        return data if isinstance(data, dict) else None

    async def get_option_orders(
        self,
        access_token: str,
        stop_when: Optional[PageStop] = None
    ) -> List[Dict[str, Any]]:
        """Option orders, newest first"""
        return await self._paginate("/options/orders/", access_token, stop_when=stop_when)
