"""Async HTTP client for the shipping API.

Wraps `httpx.AsyncClient` and turns the API's error envelope
(`{"error": {"code", "message", "details"}}`) back into exceptions the
reconciler can branch on.  Timeouts and transport failures surface as a
plain `ShippingAPIError`.
"""

from __future__ import annotations

import logging

import httpx

from app.config import settings
from app.reconciler.snapshot import PalletSnapshot

logger = logging.getLogger(__name__)

MISSING_DOA_MARKER = "missing doa number for "
PAGE_SIZE = 200


class ShippingAPIError(Exception):
    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
        details: dict | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code
        self.details = details or {}
        super().__init__(message)


class PalletConflict(ShippingAPIError):
    """Locked pallet, full destination, non-empty delete, number collision."""

    @property
    def retryable(self) -> bool:
        return bool(self.details.get("retryable"))


class PalletNotFound(ShippingAPIError):
    pass


class MissingDOAError(ShippingAPIError):
    """A release was refused because systems on the pallet lack a DOA number."""

    def __init__(self, message: str, missing_service_tags: list[str], **kwargs):
        super().__init__(message, **kwargs)
        self.missing_service_tags = missing_service_tags


def _missing_tags_from_message(message: str) -> list[str]:
    lowered = message.lower()
    pos = lowered.find(MISSING_DOA_MARKER)
    if pos < 0:
        return []
    tail = message[pos + len(MISSING_DOA_MARKER):]
    return [t.strip() for t in tail.split(",") if t.strip()]


def error_from_response(response: httpx.Response) -> ShippingAPIError:
    try:
        body = response.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        body = {}
    error = body.get("error")
    if not isinstance(error, dict):
        error = {}
    message = error.get("message") or body.get("detail")
    message = str(message or response.reason_phrase or f"HTTP {response.status_code}")
    code = error.get("code")
    details = error.get("details") or {}
    kwargs = dict(status_code=response.status_code, code=code, details=details)

    missing = details.get("missing_service_tags") or _missing_tags_from_message(message)
    if response.status_code == 412 or code == "PRECONDITION_FAILED" or missing:
        return MissingDOAError(message, list(missing), **kwargs)
    if response.status_code == 409:
        return PalletConflict(message, **kwargs)
    if response.status_code == 404:
        return PalletNotFound(message, **kwargs)
    return ShippingAPIError(message, **kwargs)


class ShippingClient:
    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._http = httpx.AsyncClient(
            base_url=base_url or settings.api_base_url,
            headers=headers,
            timeout=timeout if timeout is not None else settings.request_timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> "ShippingClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("%s %s timed out", method, path)
            raise ShippingAPIError(f"Request timed out: {method} {path}") from exc
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise ShippingAPIError(f"Request failed: {exc}") from exc
        if response.is_error:
            raise error_from_response(response)
        return response

    async def _json(self, method: str, path: str, **kwargs):
        response = await self._request(method, path, **kwargs)
        try:
            return response.json()
        except ValueError as exc:
            logger.warning("%s %s returned a non-JSON body", method, path)
            raise ShippingAPIError(
                f"Unreadable response from {method} {path}",
                status_code=response.status_code,
            ) from exc

    # ── Pallets ──────────────────────────────────────────────

    async def create_pallet(self) -> dict:
        return await self._json("POST", "/api/pallets/")

    async def get_pallets(
        self,
        status: str | None = None,
        locked: bool | None = None,
        search: str | None = None,
        limit: int = PAGE_SIZE,
        offset: int = 0,
    ) -> dict:
        """One page of pallets as `{"data": [...], "total_count": n}`."""
        params: dict = {"limit": limit, "offset": offset}
        if status:
            params["status"] = status
        if locked is not None:
            params["locked"] = str(locked).lower()
        if search:
            params["search"] = search
        body = await self._json("GET", "/api/pallets/", params=params)
        return {"data": body["items"], "total_count": body["total"]}

    async def get_open_pallets(self) -> list[PalletSnapshot]:
        pallets: list[PalletSnapshot] = []
        offset = 0
        while True:
            page = await self.get_pallets(status="open", limit=PAGE_SIZE, offset=offset)
            pallets.extend(PalletSnapshot.from_api(p) for p in page["data"])
            offset += len(page["data"])
            if not page["data"] or offset >= page["total_count"]:
                return pallets

    async def get_pallet(self, pallet_number: str) -> dict:
        return await self._json("GET", f"/api/pallets/{pallet_number}")

    async def move_system_between_pallets(
        self, service_tag: str, from_pallet_number: str, to_pallet_number: str,
    ) -> None:
        await self._request("POST", "/api/pallets/move", json={
            "service_tag": service_tag,
            "from_pallet_number": from_pallet_number,
            "to_pallet_number": to_pallet_number,
        })

    async def place_system(
        self, pallet_number: str, service_tag: str, slot: int | None = None,
    ) -> dict:
        return await self._json(
            "POST", f"/api/pallets/{pallet_number}/systems",
            json={"service_tag": service_tag, "slot": slot},
        )

    async def delete_pallet(self, pallet_number: str) -> None:
        await self._request("DELETE", f"/api/pallets/{pallet_number}")

    async def set_pallet_lock(self, pallet_number: str, locked: bool) -> dict:
        return await self._json(
            "PATCH", f"/api/pallets/{pallet_number}/lock", json={"locked": locked},
        )

    async def release_pallet(self, pallet_number: str) -> dict:
        return await self._json("POST", f"/api/pallets/{pallet_number}/release")

    # ── Systems ──────────────────────────────────────────────

    async def get_system(self, service_tag: str) -> dict:
        return await self._json("GET", f"/api/systems/{service_tag}")

    async def update_system_doa(self, service_tag: str, doa_number: str | None) -> None:
        await self._request(
            "PATCH", f"/api/systems/{service_tag}/doa", json={"doa_number": doa_number},
        )

    async def remove_system(self, service_tag: str) -> dict:
        return await self._json("DELETE", f"/api/systems/{service_tag}/pallet")
