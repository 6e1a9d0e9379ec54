"""AI routing API: generation, provider and key administration, routing table."""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse

from aios.core.dependencies import get_dispatcher, require_admin
from aios.gateway.credentials import CredentialPool
from aios.gateway.dispatcher import Dispatcher
from aios.gateway.errors import AggregateDispatchFailure, CredentialRejected, UnknownProvider
from aios.gateway.types import Credential, ProviderConfig
from aios.schemas.ai import (
    AttemptOut,
    ConnectionCheckResponse,
    CredentialOut,
    DispatchFailureResponse,
    GenerationResponse,
    KeyCreate,
    KeyUpdate,
    ProviderOut,
    ProviderUpdate,
    RoutingTableSchema,
    TaskRequest,
)

router = APIRouter(prefix="/ai", tags=["ai"])
admin = [Depends(require_admin)]


def _provider_or_404(dispatcher: Dispatcher, provider_id: str) -> ProviderConfig:
    try:
        return dispatcher.get_provider(provider_id)
    except UnknownProvider:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider_id}")


def _key_or_404(config: ProviderConfig, key_suffix: str) -> Credential:
    """Keys are addressed by the tail shown in masked output."""
    matches = [c for c in config.credentials if c.key.endswith(key_suffix)]
    if not matches:
        raise HTTPException(status_code=404, detail="Key not found")
    if len(matches) > 1:
        raise HTTPException(status_code=409, detail="Key suffix is ambiguous, use a longer suffix")
    return matches[0]


# --- Generation ---


@router.post(
    "/generate",
    response_model=GenerationResponse,
    responses={502: {"model": DispatchFailureResponse}},
)
async def generate(
    payload: TaskRequest,
    include_raw: bool = Query(False, description="Include the vendor payload"),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    """Run a generation task through routing and failover."""
    try:
        response = await dispatcher.execute(payload.to_task())
    except AggregateDispatchFailure as e:
        body = DispatchFailureResponse(
            detail="All providers failed",
            attempts=[AttemptOut(**a.to_dict()) for a in e.attempts],
        )
        return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content=body.model_dump())
    return GenerationResponse.from_response(response, include_raw=include_raw)


# --- Providers ---


@router.get("/providers", response_model=list[ProviderOut], dependencies=admin)
async def list_providers(dispatcher: Dispatcher = Depends(get_dispatcher)):
    """List providers with masked keys and health counters."""
    return [ProviderOut.from_config(p) for p in dispatcher.get_providers()]


@router.put("/providers/{provider_id}", response_model=ProviderOut, dependencies=admin)
async def update_provider(
    provider_id: str,
    payload: ProviderUpdate,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    """Register or replace a provider. Existing keys are kept."""
    try:
        credentials = dispatcher.get_provider(provider_id).credentials
    except UnknownProvider:
        credentials = CredentialPool(provider_id)

    config = ProviderConfig(
        id=provider_id,
        name=payload.name,
        enabled=payload.enabled,
        base_url=payload.base_url,
        icon=payload.icon,
        models=[m.to_model() for m in payload.models],
        credentials=credentials,
    )
    try:
        dispatcher.update_provider(config)
    except UnknownProvider:
        raise HTTPException(status_code=400, detail="Custom providers need a base_url (OpenAI-compatible endpoint)")
    return ProviderOut.from_config(config)


@router.post(
    "/providers/{provider_id}/keys",
    response_model=CredentialOut,
    status_code=201,
    dependencies=admin,
)
async def add_key(
    provider_id: str,
    payload: KeyCreate,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    _provider_or_404(dispatcher, provider_id)
    try:
        cred = dispatcher.add_key(provider_id, payload.key, label=payload.label)
    except CredentialRejected as e:
        raise HTTPException(status_code=400, detail=str(e))
    return CredentialOut.from_credential(cred)


@router.patch("/providers/{provider_id}/keys/{key_suffix}", response_model=CredentialOut, dependencies=admin)
async def update_key(
    provider_id: str,
    key_suffix: str,
    payload: KeyUpdate,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    """Activate or deactivate a key."""
    cred = _key_or_404(_provider_or_404(dispatcher, provider_id), key_suffix)
    dispatcher.set_key_active(provider_id, cred.key, payload.is_active)
    return CredentialOut.from_credential(cred)


@router.post("/providers/{provider_id}/keys/{key_suffix}/reset", response_model=CredentialOut, dependencies=admin)
async def reset_key(
    provider_id: str,
    key_suffix: str,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    """Clear exhaustion and the error counter of a key."""
    cred = _key_or_404(_provider_or_404(dispatcher, provider_id), key_suffix)
    dispatcher.reset_key(provider_id, cred.key)
    return CredentialOut.from_credential(cred)


@router.delete("/providers/{provider_id}/keys/{key_suffix}", status_code=204, dependencies=admin)
async def delete_key(
    provider_id: str,
    key_suffix: str,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    cred = _key_or_404(_provider_or_404(dispatcher, provider_id), key_suffix)
    dispatcher.remove_key(provider_id, cred.key)


@router.post("/providers/{provider_id}/test", response_model=ConnectionCheckResponse, dependencies=admin)
async def test_provider(provider_id: str, dispatcher: Dispatcher = Depends(get_dispatcher)):
    """Send a probe request through the provider."""
    _provider_or_404(dispatcher, provider_id)
    ok = await dispatcher.test_connection(provider_id)
    return ConnectionCheckResponse(provider_id=provider_id, ok=ok)


# --- Routing ---


@router.get("/routing", response_model=RoutingTableSchema, dependencies=admin)
async def get_routing(dispatcher: Dispatcher = Depends(get_dispatcher)):
    return RoutingTableSchema.model_validate(dispatcher.get_routing_table().to_dict())


@router.put("/routing", response_model=RoutingTableSchema, dependencies=admin)
async def update_routing(payload: RoutingTableSchema, dispatcher: Dispatcher = Depends(get_dispatcher)):
    """Replace the category mapping, default provider and fallback order."""
    known = {p.id for p in dispatcher.get_providers()}
    referenced = {r.provider_id for r in payload.canonical_mapping.values()} | {payload.default_provider_id}
    unknown = sorted(referenced - known)
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown provider(s): {', '.join(unknown)}")

    dispatcher.update_routing_table(
        payload.routes(),
        default_provider_id=payload.default_provider_id,
        fallback_order=payload.fallback_order,
    )
    return RoutingTableSchema.model_validate(dispatcher.get_routing_table().to_dict())


# --- Persistence ---


@router.post("/config/save", status_code=204, dependencies=admin)
async def save_config(dispatcher: Dispatcher = Depends(get_dispatcher)):
    """Persist providers, keys and routing table."""
    await dispatcher.save()


@router.post("/config/reload", status_code=204, dependencies=admin)
async def reload_config(dispatcher: Dispatcher = Depends(get_dispatcher)):
    """Discard in-memory changes and reload from the store."""
    await dispatcher.reload()


@router.get("/status", dependencies=admin)
async def get_status(dispatcher: Dispatcher = Depends(get_dispatcher)):
    """Routing defaults and credential health per provider."""
    return dispatcher.status()
