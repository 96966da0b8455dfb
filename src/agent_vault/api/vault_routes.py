# Vault API - REST endpoints for credential management
#
# Thin wrappers over VaultService:
# - Initialize/unlock/lock/reset vault
# - CRUD operations for credentials
# - Sharing with the connected agent
# - Audit log
# - LLM provider config (stored encrypted)
# Errors surface as VaultError and are rendered by the app's handler.

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from ..service import VaultService
from .rate_limiter import get_client_ip, rate_limit_mutations

router = APIRouter(prefix="/api", tags=["vault"])

_limited = [Depends(rate_limit_mutations)]


def get_vault_service(request: Request) -> VaultService:
    return request.app.state.vault_service


# Request Models

class PasswordRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=1024)


class AddKeyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    value: str
    service: Optional[str] = None
    url: Optional[str] = None
    auto_share: bool = Field(False, alias="autoShare")


class UpdateKeyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    service: Optional[str] = None
    url: Optional[str] = None
    value: Optional[str] = None
    rotation_interval_days: Optional[int] = Field(None, alias="rotationInterval")
    reset_rotation: bool = Field(False, alias="resetRotation")


class ConfigRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    provider: Optional[str] = None
    model: Optional[str] = None
    api_key: Optional[str] = Field(None, alias="apiKey")


# Endpoints

@router.get("/status")
def get_status(service: VaultService = Depends(get_vault_service)):
    """Vault status: initialized, unlocked, key count, agent connection."""
    return service.status()


@router.post("/init", dependencies=_limited)
def init_vault(body: PasswordRequest, service: VaultService = Depends(get_vault_service)):
    """Initialize a new vault with a master password (min 8 characters)."""
    service.init(body.password)
    return {"success": True}


@router.post("/unlock", dependencies=_limited)
def unlock_vault(
    body: PasswordRequest,
    request: Request,
    service: VaultService = Depends(get_vault_service),
):
    """
    Unlock vault with master password.

    Five wrong passwords from one address lock it out for 15 minutes.
    """
    service.unlock(body.password, source=get_client_ip(request))
    return {"success": True}


@router.post("/lock", dependencies=_limited)
def lock_vault(service: VaultService = Depends(get_vault_service)):
    """Lock vault (drop the key from memory)."""
    service.lock()
    return {"success": True, "message": "Vault locked"}


@router.post("/reset", dependencies=_limited)
def reset_vault(service: VaultService = Depends(get_vault_service)):
    """Delete all vault data. The vault must be initialized again."""
    service.reset()
    return {"success": True, "message": "All vault data deleted. Starting fresh."}


@router.get("/ws-token")
def get_ws_token(request: Request, service: VaultService = Depends(get_vault_service)):
    """Agent auth token and WebSocket URL (only while unlocked)."""
    token = service.ws_token()
    settings = service.settings
    return {**token, "ws_url": f"ws://{settings.host}:{settings.port}/ws"}


@router.get("/keys")
def list_keys(service: VaultService = Depends(get_vault_service)):
    """List credentials with rotation status. Values are not included."""
    return service.list_keys()


@router.post("/keys", dependencies=_limited)
async def add_key(body: AddKeyRequest, service: VaultService = Depends(get_vault_service)):
    """Add a credential, optionally sharing it with the agent right away."""
    result = await service.add_key(
        name=body.name,
        service=body.service,
        url=body.url,
        value=body.value,
        auto_share=body.auto_share,
    )
    return {"success": True, **result}


@router.post("/keys/share-all", dependencies=_limited)
async def share_all_keys(service: VaultService = Depends(get_vault_service)):
    """Share every credential the agent does not have yet."""
    results = await service.share_all()
    return {"success": True, **results}


@router.get("/keys/{key_id}/value")
def get_key_value(key_id: str, service: VaultService = Depends(get_vault_service)):
    """Decrypted credential (for editing)."""
    return service.get_key_value(key_id)


@router.put("/keys/{key_id}", dependencies=_limited)
def update_key(
    key_id: str,
    body: UpdateKeyRequest,
    service: VaultService = Depends(get_vault_service),
):
    """Edit a credential; resetRotation restarts its rotation clock."""
    fields = {
        name: getattr(body, name)
        for name in ("name", "service", "url", "value", "rotation_interval_days")
        if name in body.model_fields_set
    }
    service.update_key(key_id, fields, reset_rotation=body.reset_rotation)
    return {"success": True, "message": "Key updated successfully"}


@router.delete("/keys/{key_id}", dependencies=_limited)
def delete_key(key_id: str, service: VaultService = Depends(get_vault_service)):
    service.delete_key(key_id)
    return {"success": True}


@router.post("/keys/{key_id}/share", dependencies=_limited)
async def share_key(key_id: str, service: VaultService = Depends(get_vault_service)):
    """Send one credential to the agent and wait for its receipt."""
    result = await service.share_key(key_id)
    return {"success": True, "message": f"Shared with {result['shared_with']}", **result}


@router.post("/keys/{key_id}/unshare", dependencies=_limited)
def unshare_key(key_id: str, service: VaultService = Depends(get_vault_service)):
    """Clear the share marker locally. The agent is not notified."""
    service.unshare_key(key_id)
    return {"success": True, "message": "Key sharing revoked"}


@router.get("/audit")
def get_audit_log(
    limit: int = Query(50, ge=1, le=1000),
    service: VaultService = Depends(get_vault_service),
):
    """Most recent audit events, oldest first."""
    logs = service.audit_log(limit)
    return {"count": len(logs), "logs": logs}


@router.get("/config")
def get_llm_config(service: VaultService = Depends(get_vault_service)):
    """LLM provider config, decrypted. Defaults (no API key) until one is saved."""
    return service.get_llm_config()


@router.post("/config", dependencies=_limited)
def save_llm_config(body: ConfigRequest, service: VaultService = Depends(get_vault_service)):
    """Save the LLM provider config. apiKey must be at least 10 characters."""
    service.set_llm_config({"provider": body.provider, "model": body.model, "apiKey": body.api_key})
    return {"success": True}
