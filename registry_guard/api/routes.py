"""API routes for registry commands."""
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from registry_guard.api.schemas import CommandRequest, CommandResponse, EntityResponse, RefusalResponse
from registry_guard.database import get_db
from registry_guard.models.enums import EntityKind, Fault
from registry_guard.services.dispatcher import CommandDispatcher, build_dispatcher
from registry_guard.services.storage import SqlEntityStore

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


def require_trusted_caller(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> None:
    """
    Only the session layer in front of this service may call in.

    It asserts the actor (account, privileges) in every command body, so the
    caller itself has to prove it holds the shared service token.
    """
    expected = request.app.state.api_token
    supplied = credentials.credentials if credentials else ""
    if not expected or not hmac.compare_digest(supplied.encode(), expected.encode()):
        logger.warning("rejected API call to %s without a valid service token", request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing service token",
            headers={"WWW-Authenticate": "Bearer"},
        )


router = APIRouter(dependencies=[Depends(require_trusted_caller)])

FAULT_STATUS = {
    Fault.MISSING_PARAMETERS: status.HTTP_400_BAD_REQUEST,
    Fault.INVALID_PARAMETERS: status.HTTP_400_BAD_REQUEST,
    Fault.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    Fault.AUTHENTICATION_FAILED: status.HTTP_401_UNAUTHORIZED,
    Fault.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    Fault.CONFLICT: status.HTTP_409_CONFLICT,
    Fault.NOT_PENDING: status.HTTP_409_CONFLICT,
    Fault.INVALID_KEY: status.HTTP_400_BAD_REQUEST,
    Fault.QUOTA_EXCEEDED: status.HTTP_429_TOO_MANY_REQUESTS,
    Fault.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def get_dispatcher(request: Request, db: Session = Depends(get_db)) -> CommandDispatcher:
    """Per-request dispatcher sharing the process-wide registries kept on app.state."""
    state = request.app.state
    return build_dispatcher(
        db,
        logins=state.logins,
        hooks=state.hooks,
        challenges=state.challenges,
        limiter=state.drop_limiter,
        locks=state.locks,
    )


@router.post("/commands/{command}", response_model=CommandResponse, responses={
    400: {"model": RefusalResponse, "description": "Missing or invalid parameters, invalid key"},
    401: {"model": RefusalResponse, "description": "Authentication failed"},
    403: {"model": RefusalResponse, "description": "Refusal - not authorized"},
    404: {"model": RefusalResponse, "description": "Target not registered"},
    409: {"model": RefusalResponse, "description": "Conflict or nothing pending"},
    429: {"model": RefusalResponse, "description": "E-mail quota exceeded"},
})
def run_command(command: str, body: CommandRequest, dispatcher: CommandDispatcher = Depends(get_dispatcher)):
    """
    Run one registry command with positional arguments.

    Exactly one success or one refusal per call.
    """
    result = dispatcher.dispatch(body.actor.to_actor(), command, body.args)
    if not result.success:
        raise HTTPException(
            status_code=FAULT_STATUS[result.fault],
            detail={
                "command": result.command,
                "fault": result.fault.value,
                "messages": result.messages
            }
        )
    return CommandResponse(
        command=result.command,
        success=True,
        messages=result.messages,
        data=result.data
    )


@router.get("/entities/{name}", response_model=EntityResponse)
def get_entity(name: str, db: Session = Depends(get_db)):
    """Look up an account or group by name. Existence of a name is public, its flags are not."""
    entity = SqlEntityStore(db).find_by_name(name)
    if not entity:
        raise HTTPException(status_code=404, detail=f"{name} is not registered.")
    return entity


def _account_or_404(db: Session, account: str):
    entity = SqlEntityStore(db).find_by_name(account, EntityKind.ACCOUNT)
    if not entity:
        raise HTTPException(status_code=404, detail=f"{account} is not registered.")
    return entity


@router.put("/logins/{account}/{session_name}", status_code=status.HTTP_204_NO_CONTENT)
def login(account: str, session_name: str, request: Request, db: Session = Depends(get_db)):
    """
    The session layer reports that ``session_name`` logged in to ``account``.

    Completing a registration refreshes every session reported here.
    """
    entity = _account_or_404(db, account)
    request.app.state.logins.connect(entity, session_name)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/logins/{account}/{session_name}", status_code=status.HTTP_204_NO_CONTENT)
def logout(account: str, session_name: str, request: Request, db: Session = Depends(get_db)):
    entity = _account_or_404(db, account)
    request.app.state.logins.disconnect(entity, session_name)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
