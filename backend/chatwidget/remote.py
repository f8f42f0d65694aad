"""
Client for the two remote functions the widget calls but does not implement:
visitor resolution (CRM contact matching) and the assignment probe.
"""
import httpx
import structlog
from pydantic import ValidationError

from .config import ASSIGN_URL, REMOTE_TIMEOUT, RESOLVER_URL
from .errors import RemoteCallError
from .schemas import AssignmentProbe, ResolveRequest, ResolveResponse

logger = structlog.get_logger(__name__)


def build_http_client(**kwargs) -> httpx.AsyncClient:
    kwargs.setdefault("timeout", REMOTE_TIMEOUT)
    return httpx.AsyncClient(**kwargs)


class RemoteFunctions:
    def __init__(self, client: httpx.AsyncClient, resolver_url: str = RESOLVER_URL, assign_url: str = ASSIGN_URL):
        self.client = client
        self.resolver_url = resolver_url
        self.assign_url = assign_url

    async def _post(self, url: str, payload: dict) -> dict:
        try:
            response = await self.client.post(url, json=payload)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Remote call failed", url=url, error=str(e))
            raise RemoteCallError(str(e)) from e

    async def resolve_visitor(self, request: ResolveRequest) -> ResolveResponse:
        data = await self._post(self.resolver_url, request.model_dump(exclude_none=True))
        try:
            return ResolveResponse.model_validate(data)
        except ValidationError as e:
            raise RemoteCallError(f"Unexpected resolver response: {e}") from e

    async def probe_assignment(self, room_id: int) -> AssignmentProbe:
        data = await self._post(self.assign_url, {"room_id": room_id})
        try:
            return AssignmentProbe.model_validate(data)
        except ValidationError as e:
            raise RemoteCallError(f"Unexpected probe response: {e}") from e
