"""
Credential operations routes — cache/watcher monitoring and manual
maintenance, one set per vendor service.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from api.dependencies import get_credential_service, get_credential_services, require_admin_key
from credentials.service import CredentialService

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_key)])


class WatcherConfigUpdate(BaseModel):
    interval: Optional[float] = Field(None, gt=0)
    max_refresh_attempts: Optional[int] = Field(None, ge=1)
    refresh_threshold: Optional[float] = Field(None, gt=0)
    cleanup_interval: Optional[float] = Field(None, gt=0)
    batch_size: Optional[int] = Field(None, ge=1)


# ── Overview ─────────────────────────────────────────────────────────────


@router.get("/services")
async def list_services(request: Request) -> Dict[str, Any]:
    services = get_credential_services(request)
    return {"services": [svc.status() for svc in services.values()]}


# ── Cache ────────────────────────────────────────────────────────────────


@router.get("/{service_name}/stats")
async def cache_stats(service: CredentialService = Depends(get_credential_service)) -> Dict[str, Any]:
    return service.cache_statistics()


@router.get("/{service_name}/performance")
async def cache_performance(service: CredentialService = Depends(get_credential_service)) -> Dict[str, Any]:
    return service.performance_metrics()


@router.post("/{service_name}/cleanup")
async def cache_cleanup(service: CredentialService = Depends(get_credential_service)) -> Dict[str, Any]:
    removed = service.cache.cleanup("manual")
    return {"removed": removed, "remaining": len(service.cache)}


@router.get("/{service_name}/instances/{instance_id}/expiry")
async def instance_expiry(
    instance_id: str,
    service: CredentialService = Depends(get_credential_service),
) -> Dict[str, Any]:
    return service.cache.expiry_status(instance_id)


@router.delete("/{service_name}/instances/{instance_id}")
async def evict_instance(
    instance_id: str,
    service: CredentialService = Depends(get_credential_service),
) -> Dict[str, Any]:
    return {"instance_id": instance_id, "removed": service.revoke(instance_id)}


@router.delete("/{service_name}/users/{user_id}")
async def deprovision_user(
    user_id: str,
    service: CredentialService = Depends(get_credential_service),
) -> Dict[str, Any]:
    return {"user_id": user_id, "removed": service.deprovision_user(user_id)}


@router.delete("/{service_name}/teams/{team_id}")
async def deprovision_team(
    team_id: str,
    service: CredentialService = Depends(get_credential_service),
) -> Dict[str, Any]:
    return {"team_id": team_id, "removed": service.deprovision_team(team_id)}


# ── Refresh ──────────────────────────────────────────────────────────────


@router.post("/{service_name}/instances/{instance_id}/refresh")
async def refresh_instance(
    instance_id: str,
    service: CredentialService = Depends(get_credential_service),
) -> Dict[str, Any]:
    entry = await service.refresh_instance_token(instance_id, method="manual")
    return {"instance_id": instance_id, "refreshed": True, "credential": entry.to_dict()}


@router.get("/{service_name}/metrics")
async def refresh_metrics(service: CredentialService = Depends(get_credential_service)) -> Dict[str, Any]:
    return service.metrics.aggregate()


@router.get("/{service_name}/metrics/{instance_id}")
async def instance_refresh_metrics(
    instance_id: str,
    service: CredentialService = Depends(get_credential_service),
) -> Dict[str, Any]:
    metrics = service.metrics.for_instance(instance_id)
    if metrics is None:
        raise HTTPException(status_code=404, detail=f"No refresh metrics for instance {instance_id}")
    return metrics


# ── Watcher ──────────────────────────────────────────────────────────────


@router.get("/{service_name}/watcher/stats")
async def watcher_stats(service: CredentialService = Depends(get_credential_service)) -> Dict[str, Any]:
    return service.watcher.get_statistics()


@router.get("/{service_name}/watcher/health")
async def watcher_health(service: CredentialService = Depends(get_credential_service)) -> Dict[str, Any]:
    return service.watcher.get_health()


@router.post("/{service_name}/watcher/cycle")
async def watcher_force_cycle(service: CredentialService = Depends(get_credential_service)) -> Dict[str, Any]:
    await service.watcher.force_cycle()
    return service.watcher.get_health()


@router.patch("/{service_name}/watcher/config")
async def watcher_update_config(
    update: WatcherConfigUpdate,
    service: CredentialService = Depends(get_credential_service),
) -> Dict[str, Any]:
    changes = update.model_dump(exclude_none=True)
    new_config = service.watcher.update_config(**changes)
    return asdict(new_config)


@router.post("/{service_name}/watcher/reset")
async def watcher_reset(service: CredentialService = Depends(get_credential_service)) -> Dict[str, Any]:
    service.watcher.reset_statistics()
    return service.watcher.get_statistics()


# ── Database sync ────────────────────────────────────────────────────────


@router.post("/{service_name}/sync")
async def background_sync(
    max_instances: int = 50,
    remove_orphaned: bool = True,
    service: CredentialService = Depends(get_credential_service),
) -> Dict[str, Any]:
    report = await service.synchronizer.background_cache_sync(
        max_instances=max_instances,
        remove_orphaned=remove_orphaned,
    )
    return report.to_dict()


@router.post("/{service_name}/instances/{instance_id}/sync")
async def sync_instance(
    instance_id: str,
    force_refresh: bool = False,
    update_database: bool = False,
    service: CredentialService = Depends(get_credential_service),
) -> Dict[str, Any]:
    result = await service.synchronizer.sync_cache_with_database(
        instance_id,
        force_refresh=force_refresh,
        update_database=update_database,
    )
    return {"instance_id": instance_id, **asdict(result)}


@router.get("/{service_name}/database-health")
async def database_health(service: CredentialService = Depends(get_credential_service)) -> Dict[str, Any]:
    get_stats = getattr(service.store, "get_service_health_stats", None)
    if get_stats is None:
        raise HTTPException(status_code=501, detail="Store does not report database health")
    return await get_stats(service.service_name)
