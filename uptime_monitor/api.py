"""
FastAPI application for Uptime Monitor.
"""

import asyncio
import ipaddress
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from uptime_monitor import __version__
from uptime_monitor.config import Config
from uptime_monitor.logger import get_logger
from uptime_monitor.metrics import MetricsCollector
from uptime_monitor.models import Target
from uptime_monitor.notifier import NotificationDispatcher
from uptime_monitor.scheduler import MonitorScheduler
from uptime_monitor.storage import ResultStore
from uptime_monitor.uptime import calculate_uptime_percentage, uptime_label

REDACTED = "***REDACTED***"


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan handler that suppresses CancelledError during shutdown."""
    logger = get_logger("api")
    logger.info("Uptime Monitor API started")
    try:
        yield
    except asyncio.CancelledError:
        pass
    finally:
        logger.info("Uptime Monitor API shutting down")


def redact_config(config: Config) -> Dict[str, Any]:
    """Configuration as a dict with webhooks, keys and allow-list hidden."""
    config_dict: Dict[str, Any] = config.model_dump()

    if config_dict.get("discord_webhook_url"):
        config_dict["discord_webhook_url"] = REDACTED
    config_dict["owner_webhooks"] = {owner: REDACTED for owner in config_dict["owner_webhooks"]}
    if config_dict.get("tls_key"):
        config_dict["tls_key"] = REDACTED
    config_dict["allowed_ips"] = [f"{REDACTED} ({len(config_dict['allowed_ips'])} IPs/networks)"]
    return config_dict


def is_ip_allowed(client_ip: str, allowed_ips: list[str]) -> bool:
    """Check a client address against single IPs and CIDR networks."""
    logger = get_logger("api")
    for allowed_ip in allowed_ips:
        try:
            if "/" in allowed_ip:
                network = ipaddress.ip_network(allowed_ip, strict=False)
                if ipaddress.ip_address(client_ip) in network:
                    return True
            elif client_ip == allowed_ip:
                return True
        except ValueError as e:
            logger.warning(f"Invalid IP configuration '{allowed_ip}': {e}")
    return False


def create_app(
    scheduler: MonitorScheduler,
    metrics: MetricsCollector,
    store: ResultStore,
    dispatcher: NotificationDispatcher,
    config_path: Optional[str] = None,
    lifespan_override: Optional[Any] = None,
) -> FastAPI:
    """
    Create and configure FastAPI application.

    The scheduler's ``config`` attribute is read on every request so that
    hot-reloaded settings are visible without rebuilding the app.

    Args:
        scheduler: Monitor scheduler instance
        metrics: Metrics collector instance
        store: Result store instance
        dispatcher: Notification dispatcher instance
        config_path: Configuration file in use, if any

    Returns:
        Configured FastAPI application
    """
    config = scheduler.config
    app = FastAPI(
        title="Uptime Monitor",
        description="HTTP uptime and TLS certificate monitoring service",
        version=__version__,
        docs_url="/docs" if not config.dry_run else None,
        redoc_url="/redoc" if not config.dry_run else None,
        lifespan=lifespan_override or lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    logger = get_logger("api")

    @app.middleware("http")
    async def ip_whitelist_middleware(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        """Middleware to enforce IP whitelisting."""
        current_config = scheduler.config
        if not current_config.enable_ip_whitelist:
            return await call_next(request)

        client_ip = request.client.host if request.client else None
        if not client_ip:
            logger.warning("Unable to determine client IP address, allowing request")
            return await call_next(request)

        if not is_ip_allowed(client_ip, current_config.allowed_ips):
            logger.warning(f"Access denied for IP address: {client_ip}")
            return JSONResponse(
                status_code=403,
                content={
                    "error": "Access forbidden",
                    "message": "Your IP address is not allowed to access this service",
                    "client_ip": client_ip,
                },
            )

        logger.debug(f"Access granted for IP address: {client_ip}")
        return await call_next(request)

    async def _find_target(target_id: str) -> Target:
        for target in await scheduler.registry.list_targets():
            if target.id == target_id:
                return target
        raise HTTPException(status_code=404, detail=f"Unknown target: {target_id}")

    @app.get("/metrics", response_class=PlainTextResponse)
    async def get_metrics() -> PlainTextResponse:
        try:
            metrics_data: str = metrics.get_metrics()
            return PlainTextResponse(content=metrics_data, media_type=metrics.get_content_type())
        except Exception as e:
            logger.error(f"Failed to generate metrics: {e}")
            raise HTTPException(status_code=500, detail="Failed to generate metrics") from e

    @app.get("/healthz", response_class=JSONResponse)
    async def get_health() -> JSONResponse:
        try:
            health_status = {
                **await scheduler.get_health_status(),
                **dispatcher.get_health_status(),
                **await store.get_health_status(),
                **metrics.get_registry_status(),
                **_get_system_health(scheduler.config, config_path),
                "status": "healthy",
                "version": __version__,
            }
            return JSONResponse(content=health_status)
        except Exception as e:
            logger.error(f"Failed to get health status: {e}")
            return JSONResponse(content={"status": "error", "error": str(e)}, status_code=500)

    @app.get("/config", response_class=JSONResponse)
    async def get_config() -> JSONResponse:
        try:
            return JSONResponse(content=redact_config(scheduler.config))
        except Exception as e:
            logger.error(f"Failed to get configuration: {e}")
            raise HTTPException(status_code=500, detail="Failed to get configuration") from e

    @app.get("/targets", response_class=JSONResponse)
    async def list_targets(owner: Optional[str] = None) -> JSONResponse:
        limit = scheduler.config.max_observations_per_target
        targets = []
        for target in await scheduler.registry.list_targets(owner_ref=owner):
            observations = await store.list_observations(target.id, limit=limit)
            uptime = calculate_uptime_percentage(observations)
            targets.append(
                {
                    **target.to_dict(),
                    "last_observation": observations[0].to_dict() if observations else None,
                    "uptime_24h": uptime,
                    "uptime_label": uptime_label(uptime),
                }
            )
        return JSONResponse(content={"targets": targets, "count": len(targets)})

    @app.get("/targets/{target_id}/observations", response_class=JSONResponse)
    async def list_observations(
        target_id: str, limit: Optional[int] = Query(default=None, ge=1)
    ) -> JSONResponse:
        await _find_target(target_id)
        limit = limit or scheduler.config.max_observations_per_target
        observations = await store.list_observations(target_id, limit=limit)
        return JSONResponse(
            content={
                "target_id": target_id,
                "observations": [o.to_dict() for o in observations],
                "count": len(observations),
            }
        )

    @app.get("/targets/{target_id}/certificate", response_class=JSONResponse)
    async def get_certificate(target_id: str) -> JSONResponse:
        await _find_target(target_id)
        record = await store.get_certificate(target_id)
        if record is None:
            raise HTTPException(status_code=404, detail="No certificate inspected yet")
        return JSONResponse(content=record.to_dict())

    @app.get("/targets/{target_id}/uptime", response_class=JSONResponse)
    async def get_uptime(target_id: str, hours: int = Query(default=24, ge=1)) -> JSONResponse:
        await _find_target(target_id)
        observations = await store.list_observations(
            target_id, limit=scheduler.config.max_observations_per_target
        )
        uptime = calculate_uptime_percentage(observations, hours_back=hours)
        return JSONResponse(
            content={
                "target_id": target_id,
                "hours": hours,
                "uptime_percentage": uptime,
                "label": uptime_label(uptime),
            }
        )

    @app.post("/check", response_class=JSONResponse)
    async def trigger_check() -> JSONResponse:
        if scheduler.config.dry_run:
            return JSONResponse(content={"message": "Check not performed - dry run mode enabled"})
        try:
            logger.info("Manual uptime check triggered via API")
            return JSONResponse(content=await scheduler.run_uptime_cycle(force=True))
        except Exception as e:
            logger.error(f"Manual uptime check failed: {e}")
            raise HTTPException(status_code=500, detail=f"Check failed: {e}") from e

    @app.post("/certificates/check", response_class=JSONResponse)
    async def trigger_certificate_check() -> JSONResponse:
        if scheduler.config.dry_run:
            return JSONResponse(
                content={"message": "Certificate check not performed - dry run mode enabled"}
            )
        try:
            logger.info("Manual certificate check triggered via API")
            return JSONResponse(content=await scheduler.run_certificate_cycle())
        except Exception as e:
            logger.error(f"Manual certificate check failed: {e}")
            raise HTTPException(status_code=500, detail=f"Certificate check failed: {e}") from e

    return app


def _get_system_health(config: Config, config_path: Optional[str]) -> Dict[str, Any]:
    health_data: Dict[str, Any] = {}
    try:
        config_file_exists = bool(config_path and os.path.exists(config_path))

        health_data.update(
            {
                "config_file": config_path or "default",
                "config_file_exists": config_file_exists,
                "hot_reload_enabled": config.hot_reload,
                "targets_configured": len(config.targets),
            }
        )

        log_file_writable = True
        if config.log_file:
            log_dir = os.path.dirname(config.log_file)
            log_file_writable = os.access(log_dir if log_dir else ".", os.W_OK)
        health_data["log_file_writable"] = log_file_writable
    except Exception as e:
        health_data["system_health_error"] = str(e)

    return health_data
