"""
Signed-in user state.

Every change goes through one reducer driven by six event kinds. AuthService
is created once per process (started and stopped by the app lifespan) and
lets other components subscribe to changes, e.g. to cancel background work
when a user signs out.
"""
from __future__ import annotations

import logging
import secrets
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Optional

from cachetools import LRUCache

from nmc_prep.core.auth import create_token, revoke_token
from nmc_prep.core.config import settings
from nmc_prep.services.identity import GoogleIdentityProvider, Identity

logger = logging.getLogger(__name__)


class AuthEventKind(str, Enum):
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"
    PASSWORD_RECOVERY = "PASSWORD_RECOVERY"


@dataclass(frozen=True)
class AuthEvent:
    kind: AuthEventKind
    user_id: Optional[str] = None
    profile: Optional[dict] = None


@dataclass(frozen=True)
class AuthState:
    user_id: Optional[str] = None
    profile: Optional[dict] = None
    signed_in: bool = False
    password_recovery: bool = False
    loading: bool = True


SIGNED_OUT_STATE = AuthState(loading=False)


def reduce(state: AuthState, event: AuthEvent) -> AuthState:
    kind = event.kind
    if kind is AuthEventKind.INITIAL_SESSION:
        if event.user_id is None:
            return SIGNED_OUT_STATE
        return AuthState(user_id=event.user_id, profile=event.profile, signed_in=True, loading=False)
    if kind is AuthEventKind.SIGNED_IN:
        return AuthState(user_id=event.user_id, profile=event.profile, signed_in=True, loading=False)
    if kind is AuthEventKind.SIGNED_OUT:
        return SIGNED_OUT_STATE
    if kind is AuthEventKind.TOKEN_REFRESHED:
        if not state.signed_in:
            return state
        return replace(state, profile=event.profile if event.profile is not None else state.profile, loading=False)
    if kind is AuthEventKind.USER_UPDATED:
        if not state.signed_in:
            return state
        return replace(state, profile=event.profile, loading=False)
    if kind is AuthEventKind.PASSWORD_RECOVERY:
        return replace(state, password_recovery=True, loading=False)
    raise ValueError(f"Unknown auth event {kind!r}")


def profile_dict(p) -> Optional[dict]:
    if p is None:
        return None
    return {"id": p.id, "email": p.email, "display_name": p.display_name, "avatar_url": p.avatar_url}


Listener = Callable[[AuthEvent, AuthState], None]


class AuthService:
    def __init__(self, identity_provider: Optional[GoogleIdentityProvider] = None, max_users: Optional[int] = None):
        self.identity = identity_provider or GoogleIdentityProvider()
        # least recently seen users drop out; restore() rebuilds them from the profile
        self._states: LRUCache = LRUCache(maxsize=max_users or settings.AUTH_STATE_MAX_USERS)
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()
        self.started = False

    # ---- lifecycle ----

    def init(self) -> None:
        self.started = True
        logger.info("Auth service started")

    def teardown(self) -> None:
        with self._lock:
            self._listeners.clear()
            self._states.clear()
        self.started = False
        logger.info("Auth service stopped")

    # ---- notifications ----

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def dispatch(self, event: AuthEvent) -> AuthState:
        key = event.user_id or ""
        with self._lock:
            new = reduce(self._states.get(key, AuthState()), event)
            if new.signed_in:
                self._states[key] = new
            else:
                self._states.pop(key, None)
            listeners = list(self._listeners)
        logger.debug("Auth event %s for %s", event.kind.value, event.user_id)
        for listener in listeners:
            try:
                listener(event, new)
            except Exception:
                logger.exception("Auth listener failed on %s", event.kind.value)
        return new

    # ---- operations ----

    def current_user(self, user_id: str) -> AuthState:
        with self._lock:
            return self._states.get(user_id, SIGNED_OUT_STATE)

    def sign_in_url(self) -> tuple[str, str]:
        state = secrets.token_urlsafe(24)
        return self.identity.authorization_url(state), state

    def complete_sign_in(self, code: str, store) -> tuple[str, AuthState]:
        identity = self.identity.exchange_code(code)
        return self.sign_in(identity, store)

    def sign_in(self, identity: Identity, store, roles: Optional[list[str]] = None) -> tuple[str, AuthState]:
        """Federate the identity into a profile and issue an access token."""
        existed = store.get_profile(identity.user_id) is not None
        profile, changed = store.upsert_profile(identity.user_id, identity.email, identity.display_name, identity.avatar_url)
        state = self.dispatch(AuthEvent(AuthEventKind.SIGNED_IN, identity.user_id, profile_dict(profile)))
        if existed and changed:
            state = self.dispatch(AuthEvent(AuthEventKind.USER_UPDATED, identity.user_id, profile_dict(profile)))
        return create_token(identity.user_id, roles), state

    def restore(self, user_id: str, store) -> AuthState:
        """Rebuild state for a bearer token that outlived the process."""
        state = self.current_user(user_id)
        if state.signed_in:
            return state
        profile = store.get_profile(user_id)
        return self.dispatch(AuthEvent(AuthEventKind.INITIAL_SESSION, user_id if profile else None, profile_dict(profile)))

    def refresh(self, user_id: str, store=None, roles: Optional[list[str]] = None) -> tuple[str, AuthState]:
        profile = profile_dict(store.get_profile(user_id)) if store is not None else None
        if not self.current_user(user_id).signed_in:
            self.dispatch(AuthEvent(AuthEventKind.INITIAL_SESSION, user_id, profile))
        state = self.dispatch(AuthEvent(AuthEventKind.TOKEN_REFRESHED, user_id, profile))
        return create_token(user_id, roles), state

    def sign_out(self, user_id: str, jti: Optional[str] = None, expires_at: Optional[int] = None) -> AuthState:
        if jti:
            revoke_token(jti, expires_at)
        return self.dispatch(AuthEvent(AuthEventKind.SIGNED_OUT, user_id))


auth_service = AuthService()
