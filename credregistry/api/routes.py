"""
API Routes for the Credential Registry

Command endpoints (authority only, caller from X-Caller-Address):
- POST /createCredentialType          - Create a credential type
- POST /assignCredential              - Assign a credential type to a user
- POST /reconcile                     - Rebuild and republish the Merkle root

Query endpoints:
- GET  /getNumberOfCredentialTypes    - Catalog size
- GET  /getCredentialTypes            - All credential types
- GET  /getCredentialType/{id}        - One credential type
- GET  /getUserCredentialsTypes/{user}- A user's credential types
- GET  /getProof/{user}/{id}          - Inclusion proof for an assignment
- POST /verifyCredential              - Check a proof against the published root
- GET  /getMerkleRoot                 - Published root
- GET  /getOwnerAddress               - Authority address

Every response uses the envelope:
    {"success": true,  "data": {...}}
    {"success": false, "error": "..."}
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..core.errors import (
    DuplicateAssignment,
    NameInvalid,
    RegistryError,
    SyncPendingError,
    Unauthorized,
    UnknownCredentialType,
    UnknownLeaf,
)
from ..core.service import RegistryService
from ..observability import CALLER_HEADER, get_logger
from ..schemas import CredentialType
from ..schemas.credential import ADDRESS_PATTERN

logger = get_logger(__name__)

router = APIRouter()


# ============================================================
# Dependency Injection
# ============================================================

def get_service(request: Request) -> RegistryService:
    return request.app.state.service


def get_caller(
    caller: Optional[str] = Header(default=None, alias=CALLER_HEADER),
) -> Optional[str]:
    return caller


def _ok(data: dict[str, Any]) -> dict[str, Any]:
    return {"success": True, "data": data}


def _credential_type(credential_type: CredentialType) -> dict[str, Any]:
    return {"id": credential_type.id, "name": credential_type.name}


# ============================================================
# Request Models
# ============================================================

class CreateCredentialTypeRequest(BaseModel):
    """Request to create a credential type."""
    model_config = ConfigDict(populate_by_name=True)

    credential_type_name: str = Field(..., alias="credentialTypeName")


class AssignCredentialRequest(BaseModel):
    """Request to assign a credential type to a user."""
    model_config = ConfigDict(populate_by_name=True)

    user_address: str = Field(..., alias="userAddress", pattern=ADDRESS_PATTERN.pattern)
    credential_type_id: int = Field(..., alias="credentialTypeId", ge=0)


class VerifyCredentialRequest(BaseModel):
    """Request to verify a credential with a Merkle proof."""
    model_config = ConfigDict(populate_by_name=True)

    user_address: str = Field(..., alias="userAddress")
    credential_type_id: int = Field(..., alias="credentialTypeId")
    merkle_proof: list[str] = Field(..., alias="merkleProof")


# ============================================================
# Query Endpoints
# ============================================================

@router.get("/getNumberOfCredentialTypes", tags=["Credential Types"])
def get_number_of_credential_types(service: RegistryService = Depends(get_service)):
    """Total number of credential types."""
    return _ok({"numberOfCredentialTypes": service.get_number_of_credential_types()})


@router.get("/getCredentialTypes", tags=["Credential Types"])
def get_credential_types(service: RegistryService = Depends(get_service)):
    """All credential types in id order."""
    return _ok({
        "credentialTypes": [_credential_type(t) for t in service.get_credential_types()],
    })


@router.get("/getCredentialType/{credential_type_id}", tags=["Credential Types"])
def get_credential_type(
    credential_type_id: int,
    service: RegistryService = Depends(get_service),
):
    return _ok({"credentialType": _credential_type(service.get_credential_type(credential_type_id))})


@router.get("/getUserCredentialsTypes/{user_address}", tags=["Assignments"])
def get_user_credential_types(
    user_address: str,
    service: RegistryService = Depends(get_service),
):
    """Credential types held by a user, in assignment order."""
    return _ok({
        "userCredentialTypes": [
            _credential_type(t) for t in service.get_user_credential_types(user_address)
        ],
    })


@router.get("/getProof/{user_address}/{credential_type_id}", tags=["Verification"])
def get_proof(
    user_address: str,
    credential_type_id: int,
    service: RegistryService = Depends(get_service),
):
    """
    Inclusion proof for an assignment against the current tree.

    A proof is only good until the next assignment changes the root.
    """
    return _ok({
        "userAddress": user_address,
        "credentialTypeId": credential_type_id,
        "merkleProof": service.get_proof(user_address, credential_type_id),
        "merkleRoot": service.get_merkle_root(),
    })


@router.post("/verifyCredential", tags=["Verification"])
def verify_credential(
    request: VerifyCredentialRequest,
    service: RegistryService = Depends(get_service),
):
    """
    Verify a credential.

    Always 200. A failed verification is verificationStatus=false.
    """
    verification_status = service.verify_credential(
        request.user_address,
        request.credential_type_id,
        request.merkle_proof,
    )
    return _ok({"verificationStatus": verification_status})


@router.get("/getMerkleRoot", tags=["Verification"])
def get_merkle_root(service: RegistryService = Depends(get_service)):
    return _ok({"merkleRoot": service.get_merkle_root()})


@router.get("/getOwnerAddress", tags=["Registry"])
def get_owner_address(service: RegistryService = Depends(get_service)):
    return _ok({"ownerAddress": service.get_authority()})


# ============================================================
# Command Endpoints (Authority Only)
# ============================================================

@router.post(
    "/createCredentialType",
    status_code=status.HTTP_201_CREATED,
    tags=["Credential Types"],
)
def create_credential_type(
    request: CreateCredentialTypeRequest,
    caller: Optional[str] = Depends(get_caller),
    service: RegistryService = Depends(get_service),
):
    """Create a credential type. Names are permanent."""
    credential_type = service.create_credential_type(caller, request.credential_type_name)
    return _ok({
        "credentialTypeName": credential_type.name,
        "credentialTypeId": credential_type.id,
    })


@router.post(
    "/assignCredential",
    status_code=status.HTTP_201_CREATED,
    tags=["Assignments"],
)
def assign_credential(
    request: AssignCredentialRequest,
    caller: Optional[str] = Depends(get_caller),
    service: RegistryService = Depends(get_service),
):
    """
    Assign a credential type to a user and publish the new Merkle root.

    If the root cannot be published, the assignment still stands and the
    response is 202: verification resumes after a reconcile.
    """
    record = service.assign_credential(
        caller,
        request.user_address,
        request.credential_type_id,
    )
    return _ok({
        "userAddress": record.user,
        "credentialTypeId": record.credential_type_id,
        "merkleRoot": service.get_merkle_root(),
    })


@router.post("/reconcile", tags=["Registry"])
def reconcile(
    caller: Optional[str] = Depends(get_caller),
    service: RegistryService = Depends(get_service),
):
    """Rebuild the accumulator from the ledger and republish its root."""
    root = service.reconcile(caller)
    return _ok({
        "merkleRoot": root,
        "leafCount": service.accumulator.leaf_count,
    })


# ============================================================
# Error Handling
# ============================================================

def error_status(exc: RegistryError) -> int:
    """HTTP status for a registry error."""
    if isinstance(exc, Unauthorized):
        return status.HTTP_403_FORBIDDEN
    if isinstance(exc, (NameInvalid, DuplicateAssignment)):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, (UnknownCredentialType, UnknownLeaf)):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, SyncPendingError):
        if exc.record is not None:
            return status.HTTP_202_ACCEPTED
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def registry_error_handler(request: Request, exc: RegistryError) -> JSONResponse:
    status_code = error_status(exc)

    if isinstance(exc, SyncPendingError) and exc.record is not None:
        logger.warning(
            "Assignment recorded with verification pending",
            user=exc.record.user,
            credential_type_id=exc.record.credential_type_id,
            error=str(exc.last_error),
        )
        return JSONResponse(
            status_code=status_code,
            content=_ok({
                "userAddress": exc.record.user,
                "credentialTypeId": exc.record.credential_type_id,
                "verificationPending": True,
                "message": str(exc),
            }),
        )

    if status_code >= 500:
        logger.error("Registry error", path=request.url.path, error=str(exc))
        message = str(exc) if isinstance(exc, SyncPendingError) else "An internal error occurred."
    else:
        message = str(exc)

    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": message},
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    else:
        message = "Invalid request."
    return JSONResponse(
        status_code=422,
        content={"success": False, "error": message},
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


def register_error_handlers(app: FastAPI) -> None:
    """Install the envelope error handlers on an application."""
    app.add_exception_handler(RegistryError, registry_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
