"""
Health checks for the checkout service.

Response shape follows the "Health Check Response Format for HTTP APIs" draft
so the same probes work for Kubernetes and load balancers.
"""

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.engine import Engine
from typing import Callable, Dict, Any, Optional
import os
import time
import redis
from datetime import datetime, timezone
from enum import Enum
import psutil
import logging

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class HealthStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"


class ServiceHealth:
    """
    Builds the health router for a service.

    ``engine_provider`` returns the SQLAlchemy engine the service actually
    uses, so readiness reflects the real connection pool. ``gateway_configured``
    reports whether outbound payment credentials are present; a missing key
    degrades the service (cash orders still work) instead of failing it.
    """

    def __init__(
        self,
        service_name: str,
        version: str = "1.0.0",
        engine_provider: Optional[Callable[[], Engine]] = None,
        gateway_configured: Optional[Callable[[], bool]] = None,
    ):
        self.service_name = service_name
        self.version = version
        self.engine_provider = engine_provider
        self.gateway_configured = gateway_configured
        self.start_time = time.time()
        self.checks_performed = 0
        self.last_check_time = None

    def create_health_router(self) -> APIRouter:
        router = APIRouter(tags=["health"])

        @router.get("/health", status_code=status.HTTP_200_OK)
        async def health_check() -> Dict[str, Any]:
            """Liveness probe - no dependency checks"""
            return {
                "status": HealthStatus.PASS,
                "service": self.service_name,
                "version": self.version,
                "releaseId": os.getenv("RELEASE_ID", "unknown"),
                "timestamp": _now()
            }

        @router.get("/health/live", status_code=status.HTTP_200_OK)
        async def liveness() -> Dict[str, Any]:
            return {"status": "alive"}

        @router.get("/health/ready")
        async def readiness() -> JSONResponse:
            """Readiness probe - database, payment gateway and host resources"""
            checks = self.perform_readiness_checks()
            overall_status = self.calculate_overall_status(checks)
            status_code = (
                status.HTTP_503_SERVICE_UNAVAILABLE
                if overall_status == HealthStatus.FAIL
                else status.HTTP_200_OK
            )
            return JSONResponse(status_code=status_code, content={
                "status": overall_status,
                "version": self.version,
                "releaseId": os.getenv("RELEASE_ID", "unknown"),
                "checks": checks,
                "serviceId": self.service_name,
                "description": f"{self.service_name} order and payment pipeline",
                "timestamp": _now()
            })

        @router.get("/metrics")
        async def metrics() -> Dict[str, Any]:
            process = psutil.Process()
            memory = process.memory_info()
            return {
                "service": self.service_name,
                "version": self.version,
                "uptime_seconds": time.time() - self.start_time,
                "checks_performed": self.checks_performed,
                "timestamp": _now(),
                "system": {
                    "memory_rss_bytes": memory.rss,
                    "memory_vms_bytes": memory.vms,
                    "cpu_percent": process.cpu_percent(),
                    "num_threads": process.num_threads()
                }
            }

        return router

    def perform_readiness_checks(self) -> Dict[str, Dict[str, Any]]:
        self.checks_performed += 1
        self.last_check_time = time.time()

        checks = {"database:connectivity": self._check_database()}
        if self.gateway_configured is not None:
            checks["payments:gateway"] = self._check_gateway()
        if os.getenv("REDIS_URL"):
            checks["cache:connectivity"] = self._check_redis()
        checks["system:memory"] = self._check_memory()
        checks["system:disk"] = self._check_disk()
        return checks

    def _check_database(self) -> Dict[str, Any]:
        if self.engine_provider is None:
            return {"status": HealthStatus.WARN, "componentType": "datastore",
                    "output": "No engine configured", "time": _now()}
        try:
            start_time = time.time()
            with self.engine_provider().connect() as conn:
                conn.execute(text("SELECT 1")).fetchone()
            return {
                "status": HealthStatus.PASS,
                "componentType": "datastore",
                "observedValue": f"{(time.time() - start_time) * 1000:.2f}",
                "observedUnit": "ms",
                "time": _now()
            }
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return {"status": HealthStatus.FAIL, "componentType": "datastore",
                    "output": str(e), "time": _now()}

    def _check_gateway(self) -> Dict[str, Any]:
        if self.gateway_configured():
            return {"status": HealthStatus.PASS, "componentType": "component", "time": _now()}
        return {
            "status": HealthStatus.WARN,
            "componentType": "component",
            "output": "Payment gateway API key is not configured; STK push disabled",
            "time": _now()
        }

    def _check_redis(self) -> Dict[str, Any]:
        try:
            r = redis.from_url(os.environ["REDIS_URL"], socket_connect_timeout=1)
            r.ping()
            return {"status": HealthStatus.PASS, "componentType": "cache", "time": _now()}
        except Exception as e:
            return {"status": HealthStatus.WARN, "componentType": "cache",
                    "output": str(e), "time": _now()}

    def _check_memory(self) -> Dict[str, Any]:
        try:
            available_mb = psutil.virtual_memory().available / (1024 ** 2)
            if available_mb < 100:
                status_val = HealthStatus.FAIL
            elif available_mb < 500:
                status_val = HealthStatus.WARN
            else:
                status_val = HealthStatus.PASS
            return {
                "status": status_val,
                "componentType": "system",
                "observedValue": f"{available_mb:.2f}",
                "observedUnit": "MB",
                "time": _now()
            }
        except Exception as e:
            return {"status": HealthStatus.WARN, "componentType": "system",
                    "output": str(e), "time": _now()}

    def _check_disk(self) -> Dict[str, Any]:
        try:
            percent = psutil.disk_usage("/").percent
            status_val = HealthStatus.WARN if percent > 90 else HealthStatus.PASS
            return {
                "status": status_val,
                "componentType": "system",
                "observedValue": f"{percent:.1f}",
                "observedUnit": "percent",
                "time": _now()
            }
        except Exception as e:
            return {"status": HealthStatus.WARN, "componentType": "system",
                    "output": str(e), "time": _now()}

    @staticmethod
    def calculate_overall_status(checks: Dict[str, Dict[str, Any]]) -> HealthStatus:
        statuses = [check.get("status", HealthStatus.PASS) for check in checks.values()]
        if HealthStatus.FAIL in statuses:
            return HealthStatus.FAIL
        if HealthStatus.WARN in statuses:
            return HealthStatus.WARN
        return HealthStatus.PASS
