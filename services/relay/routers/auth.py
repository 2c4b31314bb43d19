"""
Trashcan Relay — Login Router
Exchanges dashboard credentials for a bearer token.
"""
import hmac

from fastapi import APIRouter, HTTPException, Request

from log import get_logger
from models import LoginRequest

logger = get_logger()
router = APIRouter()


@router.post("/login")
async def login(body: LoginRequest, request: Request):
    users: dict[str, str] = request.app.state.users
    expected = users.get(body.username)
    if expected is None or not hmac.compare_digest(expected.encode(), body.password.encode()):
        logger.warning("login.rejected", username=body.username)
        raise HTTPException(status_code=401, detail="Invalid credentials")

    token = request.app.state.authenticator.issue(body.username)
    logger.info("login.accepted", username=body.username)
    return {"token": token}
