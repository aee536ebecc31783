"""API client for the escrow marketplace.

Thin HTTP client with a pluggable transport interface. Transports return
the decoded JSON envelope; MarketClient unwraps `data` and turns failure
envelopes into APIError. Paged routes return `(data, pagination)`.
"""

from abc import ABC, abstractmethod

import httpx


class APIError(Exception):
    """Failure envelope returned by the server."""

    def __init__(self, status: int, code: str, message: str):
        super().__init__(f"{status} {code}: {message}")
        self.status = status
        self.code = code
        self.message = message


class Transport(ABC):
    """Returns (status, decoded JSON body) for each request."""

    @abstractmethod
    async def get(self, path: str, params: dict | None = None) -> tuple[int, dict]:
        ...

    @abstractmethod
    async def post(self, path: str, data: dict | None = None) -> tuple[int, dict]:
        ...

    @abstractmethod
    async def put(self, path: str, data: dict) -> tuple[int, dict]:
        ...


class HTTPTransport(Transport):
    """Default. Plain JSON over HTTP."""

    def __init__(self, base_url: str = "http://localhost:8000", timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def _request(self, method: str, path: str, **kwargs) -> tuple[int, dict]:
        async with httpx.AsyncClient() as client:
            resp = await client.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        try:
            body = resp.json()
        except ValueError:
            # Non-JSON error page (proxy, crash): synthesize an envelope
            body = {"success": False, "error": {"code": "HTTP_ERROR", "message": resp.text}}
        return resp.status_code, body

    async def get(self, path: str, params: dict | None = None) -> tuple[int, dict]:
        return await self._request("GET", path, params=params)

    async def post(self, path: str, data: dict | None = None) -> tuple[int, dict]:
        return await self._request("POST", path, json=data or {})

    async def put(self, path: str, data: dict) -> tuple[int, dict]:
        return await self._request("PUT", path, json=data)


def unwrap(status: int, body: dict):
    if status >= 400 or not body.get("success", False):
        err = body.get("error") or {}
        raise APIError(status, err.get("code", "HTTP_ERROR"), err.get("message", ""))
    return body.get("data")


class MarketClient:
    """High-level client for the escrow marketplace."""

    def __init__(self, transport: Transport | None = None, base_url: str = "http://localhost:8000"):
        self.transport = transport or HTTPTransport(base_url)

    async def _get(self, path: str, **params):
        params = {k: v for k, v in params.items() if v is not None}
        return unwrap(*await self.transport.get(path, params or None))

    async def _get_page(self, path: str, **params) -> tuple[list, dict]:
        params = {k: v for k, v in params.items() if v is not None}
        status, body = await self.transport.get(path, params or None)
        return unwrap(status, body), body.get("pagination") or {}

    async def _post(self, path: str, data: dict | None = None):
        return unwrap(*await self.transport.post(path, data))

    async def health(self) -> dict:
        return await self._get("/health")

    # --- Escrows ---

    async def create_escrow(self, buyer: str, seller: str, amount, terms_hash: str,
                            arbitrator: str | None = None, token_address: str | None = None) -> dict:
        data = {"buyer": buyer, "seller": seller, "amount": str(amount), "terms_hash": terms_hash}
        if arbitrator:
            data["arbitrator"] = arbitrator
        if token_address:
            data["token_address"] = token_address
        return await self._post("/escrows", data)

    async def list_escrows(self, status: str | None = None, user: str | None = None,
                           limit: int = 20, offset: int = 0) -> tuple[list[dict], dict]:
        return await self._get_page("/escrows", status=status, user=user, limit=limit, offset=offset)

    async def get_escrow(self, escrow_id: int) -> dict:
        return await self._get(f"/escrows/{escrow_id}")

    async def escrow_stats(self) -> dict:
        return await self._get("/escrows/stats/overview")

    async def confirm_escrow(self, escrow_id: int, user: str) -> dict:
        return await self._post(f"/escrows/{escrow_id}/confirm", {"user": user})

    async def dispute_escrow(self, escrow_id: int, user: str, evidence_hash: str,
                             evidence_description: str | None = None) -> dict:
        data = {"user": user, "evidence_hash": evidence_hash}
        if evidence_description:
            data["evidence_description"] = evidence_description
        return await self._post(f"/escrows/{escrow_id}/dispute", data)

    async def cancel_escrow(self, escrow_id: int, user: str, reason: str | None = None) -> dict:
        return await self._post(f"/escrows/{escrow_id}/cancel", {"user": user, "reason": reason})

    # --- Disputes ---

    async def create_dispute(self, escrow_id: int, buyer: str, seller: str, evidence: dict,
                             actor: str | None = None) -> dict:
        data = {"escrow_id": escrow_id, "buyer": buyer, "seller": seller, "evidence": evidence}
        if actor:
            data["actor"] = actor
        return await self._post("/disputes", data)

    async def list_disputes(self, status: str | None = None, participant: str | None = None,
                            limit: int = 20, offset: int = 0) -> tuple[list[dict], dict]:
        return await self._get_page("/disputes", status=status, participant=participant, limit=limit, offset=offset)

    async def get_dispute(self, dispute_id: int) -> dict:
        return await self._get(f"/disputes/{dispute_id}")

    async def dispute_stats(self) -> dict:
        return await self._get("/disputes/stats/overview")

    async def add_evidence(self, dispute_id: int, files: list[dict] | None = None,
                           description: str | None = None, actor: str | None = None) -> dict:
        data = {"files": files or []}
        if description:
            data["description"] = description
        if actor:
            data["actor"] = actor
        return await self._post(f"/disputes/{dispute_id}/evidence", data)

    async def assign_jurors(self, dispute_id: int, jurors: list[dict]) -> dict:
        jurors = [{"address": j["address"], "stake": str(j["stake"])} for j in jurors]
        return await self._post(f"/disputes/{dispute_id}/jurors", {"jurors": jurors})

    async def vote(self, dispute_id: int, juror: str, vote: str) -> dict:
        return await self._post(f"/disputes/{dispute_id}/vote", {"juror": juror, "vote": vote})

    async def cancel_dispute(self, dispute_id: int, actor: str, reason: str | None = None) -> dict:
        return await self._post(f"/disputes/{dispute_id}/cancel", {"actor": actor, "reason": reason})

    # --- Reputation ---

    async def get_reputation(self, address: str) -> dict:
        return await self._get(f"/reputation/{address}")

    async def reputation_history(self, address: str, limit: int = 20, offset: int = 0) -> tuple[list[dict], dict]:
        return await self._get_page(f"/reputation/{address}/history", limit=limit, offset=offset)

    async def badges(self, address: str) -> list[dict]:
        return await self._get(f"/reputation/{address}/badges")

    async def award_badge(self, address: str, name: str, description: str = "",
                          category: str = "Special") -> dict:
        data = {"name": name, "description": description, "category": category}
        return await self._post(f"/reputation/{address}/badges", data)

    async def auto_award_badges(self, address: str) -> dict:
        return await self._post(f"/reputation/{address}/badges/auto")

    async def update_reputation(self, address: str, action: str, change: int,
                                reason: str | None = None, related_id: str | None = None) -> dict:
        data = {"action": action, "change": change, "reason": reason, "related_id": related_id}
        return await self._post(f"/reputation/{address}/update", data)

    async def leaderboard(self, limit: int = 10, offset: int = 0) -> list[dict]:
        return await self._get("/reputation/leaderboard/top", limit=limit, offset=offset)

    async def reputation_by_tier(self, tier: str, limit: int = 20, offset: int = 0) -> tuple[list[dict], dict]:
        return await self._get_page(f"/reputation/tier/{tier}", limit=limit, offset=offset)

    async def recent_activity(self, limit: int = 50, offset: int = 0) -> list[dict]:
        return await self._get("/reputation/activity/recent", limit=limit, offset=offset)

    async def reputation_stats(self) -> dict:
        return await self._get("/reputation/stats/overview")

    # --- Jurors ---

    async def register_juror(self, address: str, stake) -> dict:
        return await self._post("/jurors/register", {"address": address, "stake": str(stake)})

    async def unregister_juror(self, address: str) -> dict:
        return await self._post("/jurors/unregister", {"address": address})

    async def update_stake(self, address: str, stake) -> dict:
        return unwrap(*await self.transport.put("/jurors/stake", {"address": address, "stake": str(stake)}))

    async def get_juror(self, address: str) -> dict:
        return await self._get(f"/jurors/{address}")

    async def active_jurors(self, limit: int = 20, offset: int = 0) -> tuple[list[dict], dict]:
        return await self._get_page("/jurors", limit=limit, offset=offset)

    async def top_jurors(self, limit: int = 10, offset: int = 0) -> list[dict]:
        return await self._get("/jurors/top", limit=limit, offset=offset)

    async def juror_stats(self) -> dict:
        return await self._get("/jurors/stats/overview")
