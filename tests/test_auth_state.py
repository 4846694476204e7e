from nmc_prep.core.auth import decode_token, is_revoked
from nmc_prep.services.auth_state import AuthEvent, AuthEventKind, AuthService, AuthState, reduce
from nmc_prep.services.identity import Identity

from conftest import FakeIdentity

K = AuthEventKind
PROFILE = {"id": "u1", "display_name": "Ada"}


def test_initial_session_with_and_without_user():
    assert reduce(AuthState(), AuthEvent(K.INITIAL_SESSION)) == AuthState(loading=False)
    s = reduce(AuthState(), AuthEvent(K.INITIAL_SESSION, "u1", PROFILE))
    assert s.signed_in and s.user_id == "u1" and s.profile == PROFILE and not s.loading

def test_sign_in_then_out():
    s = reduce(AuthState(), AuthEvent(K.SIGNED_IN, "u1", PROFILE))
    assert s.signed_in
    assert reduce(s, AuthEvent(K.SIGNED_OUT, "u1")) == AuthState(loading=False)

def test_token_refresh_keeps_profile_when_none_given():
    s = reduce(AuthState(), AuthEvent(K.SIGNED_IN, "u1", PROFILE))
    assert reduce(s, AuthEvent(K.TOKEN_REFRESHED, "u1")).profile == PROFILE

def test_user_updated_replaces_profile_only_when_signed_in():
    s = reduce(AuthState(), AuthEvent(K.SIGNED_IN, "u1", PROFILE))
    new = {"id": "u1", "display_name": "Ada L."}
    assert reduce(s, AuthEvent(K.USER_UPDATED, "u1", new)).profile == new
    out = AuthState(loading=False)
    assert reduce(out, AuthEvent(K.USER_UPDATED, "u1", new)) == out

def test_password_recovery_flag():
    assert reduce(AuthState(), AuthEvent(K.PASSWORD_RECOVERY)).password_recovery

def test_every_event_kind_is_handled():
    for kind in AuthEventKind:
        reduce(AuthState(), AuthEvent(kind, "u1", PROFILE))


def test_sign_in_creates_profile_and_notifies(auth_service, store):
    seen = []
    unsubscribe = auth_service.subscribe(lambda e, s: seen.append(e.kind))
    token, state = auth_service.complete_sign_in("ada", store)
    assert state.signed_in and state.user_id == "google:ada"
    assert store.get_profile("google:ada").email == "ada@example.com"
    assert decode_token(token).sub == "google:ada"
    assert seen == [K.SIGNED_IN]
    unsubscribe()
    auth_service.sign_out("google:ada")
    assert seen == [K.SIGNED_IN]

def test_changed_profile_emits_user_updated(auth_service, store):
    auth_service.complete_sign_in("ada", store)
    seen = []
    auth_service.subscribe(lambda e, s: seen.append(e.kind))
    _, state = auth_service.sign_in(Identity("google:ada", "ada@example.com", "Ada Lovelace", "https://img/ada.png"), store)
    assert seen == [K.SIGNED_IN, K.USER_UPDATED]
    assert state.profile["display_name"] == "Ada Lovelace"

def test_restore_and_current_user(auth_service, store):
    store.upsert_profile("u9", None, "Nine", None)
    assert not auth_service.current_user("u9").signed_in
    assert auth_service.restore("u9", store).signed_in
    assert auth_service.current_user("u9").profile["display_name"] == "Nine"
    assert not auth_service.restore("ghost", store).signed_in

def test_sign_out_revokes_token(auth_service, store):
    token, _ = auth_service.complete_sign_in("ada", store)
    data = decode_token(token)
    assert not is_revoked(data.jti)
    state = auth_service.sign_out(data.sub, data.jti, data.exp)
    assert not state.signed_in and is_revoked(data.jti)

def test_listener_errors_do_not_break_dispatch(auth_service, store):
    def bad(e, s):
        raise RuntimeError("listener bug")
    auth_service.subscribe(bad)
    _, state = auth_service.complete_sign_in("ada", store)
    assert state.signed_in

def test_teardown_drops_listeners_and_state(auth_service, store):
    seen = []
    auth_service.subscribe(lambda e, s: seen.append(e))
    auth_service.complete_sign_in("ada", store)
    auth_service.teardown()
    assert not auth_service.current_user("google:ada").signed_in
    auth_service.sign_out("google:ada")
    assert len(seen) == 1

def test_sign_in_url_carries_state(auth_service):
    url, state = auth_service.sign_in_url()
    assert state in url

def test_state_map_keeps_only_recent_users(store):
    svc = AuthService(identity_provider=FakeIdentity(), max_users=2)
    for code in ("ada", "bob", "cy"):
        svc.complete_sign_in(code, store)
    assert not svc.current_user("google:ada").signed_in
    assert svc.current_user("google:cy").signed_in
    # an evicted user comes back from the stored profile
    assert svc.restore("google:ada", store).profile["email"] == "ada@example.com"
    assert not svc.current_user("google:bob").signed_in
