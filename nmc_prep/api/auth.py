import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from nmc_prep.api.deps import get_auth_service, get_progress_store, get_store
from nmc_prep.core.auth import TokenData, get_current_user, revoke_token
from nmc_prep.core.config import settings
from nmc_prep.services.identity import Identity, IdentityError

logger = logging.getLogger(__name__)

router = APIRouter()

def _state_key(state: str) -> str: return f"nmcprep:oauth:{state}"

class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: str
    profile: Optional[dict] = None

class SessionOut(BaseModel):
    user_id: Optional[str] = None
    signed_in: bool
    profile: Optional[dict] = None

class MockLogin(BaseModel):
    user_id: str
    roles: List[str] = ["student"]
    email: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None

@router.get("/login")
def login(auth=Depends(get_auth_service), progress=Depends(get_progress_store)):
    try:
        url, state = auth.sign_in_url()
    except IdentityError as e:
        logger.warning("Sign-in unavailable: %s", e)
        raise HTTPException(503, str(e))
    progress.save(_state_key(state), {"issued": True})
    return {"authorization_url": url, "state": state}

@router.get("/callback", response_model=TokenOut)
def callback(code: str = Query(...), state: str = Query(...), auth=Depends(get_auth_service),
             progress=Depends(get_progress_store), store=Depends(get_store)):
    if progress.load(_state_key(state)) is None:
        raise HTTPException(400, "Unknown or expired sign-in state")
    progress.delete(_state_key(state))
    try:
        token, st = auth.complete_sign_in(code, store)
    except IdentityError as e:
        raise HTTPException(401, str(e))
    return TokenOut(access_token=token, user_id=st.user_id, profile=st.profile)

@router.post("/refresh", response_model=TokenOut)
def refresh(user: TokenData = Depends(get_current_user), auth=Depends(get_auth_service), store=Depends(get_store)):
    token, st = auth.refresh(user.sub, store, user.roles)
    if user.jti:
        # old token stops working once a new one is issued
        revoke_token(user.jti, user.exp)
    return TokenOut(access_token=token, user_id=user.sub, profile=st.profile)

@router.get("/session", response_model=SessionOut)
def current_session(user: TokenData = Depends(get_current_user), auth=Depends(get_auth_service), store=Depends(get_store)):
    st = auth.restore(user.sub, store)
    if not st.signed_in:
        raise HTTPException(401, "No profile for this account; sign in again")
    return SessionOut(user_id=st.user_id, signed_in=True, profile=st.profile)

@router.post("/logout")
def logout(user: TokenData = Depends(get_current_user), auth=Depends(get_auth_service)):
    auth.sign_out(user.sub, user.jti, user.exp)
    return {"status": "signed_out"}

@router.post("/mock-login", response_model=TokenOut)
def mock_login(payload: MockLogin, auth=Depends(get_auth_service), store=Depends(get_store)):
    if not settings.ENABLE_MOCK_LOGIN:
        raise HTTPException(404, "Not found")
    identity = Identity(user_id=payload.user_id, email=payload.email, display_name=payload.display_name or payload.user_id,
                        avatar_url=payload.avatar_url)
    token, st = auth.sign_in(identity, store, payload.roles)
    return TokenOut(access_token=token, user_id=payload.user_id, profile=st.profile)
