"""
Visitor identity across page loads.

The visitor token lives client-side (one localStorage key in the frame); the
engine reads it once when the socket opens and asks the frame to store it only
when it changes, which in practice is once per new visitor.
"""
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import structlog

from ..errors import RemoteCallError, WidgetError
from ..schemas import ResolveRequest, RoomOut, VisitorOut

logger = structlog.get_logger(__name__)

# identity props that map to resolver fields; everything else is custom data
RESERVED_PROPS = ("name", "email", "phone", "company_id", "company_name", "user_id")


class TokenStore:
    def __init__(self, initial: Optional[str], persist: Callable[[str], Awaitable[None]]):
        self._token = initial or None
        self._persist = persist

    def load(self) -> Optional[str]:
        return self._token

    async def save(self, token: str) -> bool:
        if not token or token == self._token:
            return False
        self._token = token
        await self._persist(token)
        return True


@dataclass
class ExternalIdentity:
    """Identity supplied by the hosting page (a customer portal)."""
    api_key: Optional[str] = None
    external_id: Optional[str] = None
    visitor_token: Optional[str] = None
    props: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_portal(self) -> bool:
        return bool(self.external_id or self.visitor_token)


@dataclass
class ResolvedSession:
    visitor: VisitorOut
    active_room: Optional[RoomOut] = None
    portal: bool = False
    auto_start: bool = False
    # None when the resolver was not consulted
    has_history: Optional[bool] = None


def split_identity_props(props: Optional[Dict[str, Any]]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    reserved, custom = {}, {}
    for key, value in (props or {}).items():
        if key in RESERVED_PROPS:
            if value is not None:
                reserved[key] = str(value)
        else:
            custom[key] = value
    return reserved, custom


class SessionResolver:
    def __init__(self, store, remote, tokens: TokenStore, api_key: Optional[str],
                 owner_user_id: Optional[str] = None):
        self.store = store
        self.remote = remote
        self.tokens = tokens
        self.api_key = api_key
        self.owner_user_id = owner_user_id
        self._pending_props: Dict[str, Any] = {}

    async def resolve_session(self, external: Optional[ExternalIdentity] = None) -> Optional[ResolvedSession]:
        """
        Persisted token first, then a token handed over by the host, then the
        remote resolver for an external id. None means the visitor stays
        anonymous until the form is submitted.
        """
        portal = external is not None and external.is_portal
        try:
            token = self.tokens.load()
            if token:
                visitor = await self.store.get_visitor_by_token(token)
                if visitor is not None:
                    return await self._session_for(visitor, portal)
                logger.info("Persisted visitor token is unknown, ignoring")

            if external is not None and external.visitor_token:
                visitor = await self.store.get_visitor_by_token(external.visitor_token)
                if visitor is not None:
                    await self.tokens.save(visitor.visitor_token)
                    return await self._session_for(visitor, portal)

            if external is not None and external.external_id and self.api_key:
                reserved, custom = split_identity_props(external.props)
                request = ResolveRequest(api_key=self.api_key, external_id=external.external_id,
                                         custom_data=custom or None, **reserved)
                resolved = await self._resolve_remote(request)
                if resolved is not None:
                    visitor, response = resolved
                    await self.tokens.save(visitor.visitor_token)
                    session = await self._session_for(visitor, portal)
                    session.auto_start = response.auto_start and not response.needs_form
                    session.has_history = response.has_history or session.active_room is not None
                    return session
        except WidgetError as e:
            logger.warning("Session resolution failed, continuing anonymously", error=str(e))
        return None

    async def _session_for(self, visitor: VisitorOut, portal: bool) -> ResolvedSession:
        room = await self.store.find_open_room(visitor.id)
        return ResolvedSession(visitor=visitor, active_room=room, portal=portal)

    async def _resolve_remote(self, request: ResolveRequest):
        try:
            response = await self.remote.resolve_visitor(request)
        except RemoteCallError:
            return None
        if not response.visitor_token:
            logger.warning("Resolver returned no visitor token")
            return None
        visitor = await self.store.upsert_visitor(
            response.visitor_token,
            {
                "name": response.visitor_name or request.name,
                "email": response.visitor_email or request.email,
                "phone": request.phone,
                "contact_id": response.contact_id,
                "company_contact_id": response.company_contact_id,
                "owner_user_id": response.user_id or self.owner_user_id,
            },
            request.custom_data,
        )
        return visitor, response

    async def identify(self, name: str, email: Optional[str] = None, phone: Optional[str] = None,
                       props: Optional[Dict[str, Any]] = None, external_id: Optional[str] = None) -> VisitorOut:
        """Form submission: link through the resolver when possible, otherwise create/update locally."""
        reserved, custom = split_identity_props({**self._pending_props, **(props or {})})
        self._pending_props = {}
        reserved.update({k: v for k, v in (("name", name), ("email", email), ("phone", phone)) if v})

        visitor = None
        if self.api_key:
            request = ResolveRequest(api_key=self.api_key, external_id=external_id,
                                     custom_data=custom or None, **reserved)
            resolved = await self._resolve_remote(request)
            if resolved is not None:
                visitor = resolved[0]
        if visitor is None:
            fields = {k: reserved.get(k) for k in ("name", "email", "phone")}
            fields["owner_user_id"] = self.owner_user_id
            visitor = await self.store.upsert_visitor(self.tokens.load(), fields, custom or None)

        if await self.tokens.save(visitor.visitor_token):
            logger.info("Visitor token persisted", visitor_id=visitor.id)
        return visitor

    async def update_identity(self, props: Dict[str, Any], external_id: Optional[str] = None) -> Optional[VisitorOut]:
        """
        Host identity update. Re-runs the resolver so CRM links follow the new
        data; held in memory until the visitor exists.
        """
        token = self.tokens.load()
        if not token:
            self._pending_props.update(props)
            return None
        reserved, custom = split_identity_props(props)
        if self.api_key:
            request = ResolveRequest(api_key=self.api_key, external_id=external_id,
                                     custom_data=custom or None, **reserved)
            resolved = await self._resolve_remote(request)
            if resolved is not None:
                visitor = resolved[0]
                await self.tokens.save(visitor.visitor_token)
                return visitor
        fields = {k: reserved.get(k) for k in ("name", "email", "phone")}
        return await self.store.upsert_visitor(token, fields, custom or None)
