# src/autopol/api/server.py
"""
REST API server for autopol policy discovery.
"""
import asyncio
from typing import List, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..config import AutopolConfig, load_config
from ..errors import AutopolError, PolicyFormatError
from ..orchestrator import PolicyDiscoveryOrchestrator, load_discoverer
from ..policy.models import LifecycleStatus
from ..policy.store import parse_knox_documents
from ..policy.synthesizer import convert_knox_policies_to_cilium, dump_cilium_policies_yaml
from ..services import KubernetesServiceCatalog, Service
from ..utils.logging import setup_logger
from .schemas import (
    ConvertRequest,
    ConvertResponse,
    CycleRequest,
    CycleResponse,
    HealthResponse,
    StatsResponse,
)

logger = setup_logger(__name__)

# Create FastAPI app
app = FastAPI(
    title="autopol Policy Discovery API",
    description="Cilium network policy discovery from Hubble flows",
    version="0.1.0"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Global orchestrator instance
_orchestrator: Optional[PolicyDiscoveryOrchestrator] = None
_discovery_task: Optional[asyncio.Task] = None


def get_orchestrator() -> PolicyDiscoveryOrchestrator:
    """Dependency to get orchestrator instance"""
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not initialized")
    return _orchestrator


def set_orchestrator(orchestrator: Optional[PolicyDiscoveryOrchestrator]):
    global _orchestrator
    _orchestrator = orchestrator


def build_orchestrator(config: AutopolConfig) -> PolicyDiscoveryOrchestrator:
    """Wire an orchestrator and its ambient services from configuration"""
    from ..observability.auditor import AuditLogger
    from ..observability.metrics import init_metrics

    metrics = init_metrics(config.metrics.port) if config.metrics.enabled else None
    audit_logger = AuditLogger(config.audit.log_dir) if config.audit.log_dir else None

    try:
        catalog = KubernetesServiceCatalog(kubeconfig=config.hubble.kubeconfig,
                                           cluster_name=config.cluster_name)
    except Exception as e:
        logger.warning(f"Kubernetes service catalog unavailable, using static DNS ports: {e}")
        catalog = None

    return PolicyDiscoveryOrchestrator(
        config,
        load_discoverer(config.discovery.engine),
        service_catalog=catalog,
        metrics=metrics,
        audit_logger=audit_logger,
    )


async def _discovery_loop(orchestrator: PolicyDiscoveryOrchestrator, interval: int):
    loop = asyncio.get_running_loop()
    while True:
        await asyncio.sleep(interval)
        await loop.run_in_executor(None, orchestrator.run_cycle)


@app.on_event("startup")
async def startup_event():
    """Initialize orchestrator on startup"""
    global _discovery_task
    if _orchestrator is None:
        try:
            set_orchestrator(build_orchestrator(load_config()))
        except AutopolError as e:
            logger.error(f"Failed to initialize orchestrator: {e}")
            raise

    config = _orchestrator.config
    if config.hubble.enabled:
        _orchestrator.start_collection()
    if config.discovery.interval:
        _discovery_task = asyncio.create_task(_discovery_loop(_orchestrator, config.discovery.interval))

    logger.info("autopol API ready")


@app.on_event("shutdown")
async def shutdown_event():
    global _discovery_task
    if _discovery_task is not None:
        _discovery_task.cancel()
        _discovery_task = None
    if _orchestrator is not None:
        _orchestrator.stop_collection()


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint"""
    return {
        "service": "autopol Policy Discovery API",
        "version": "0.1.0",
        "endpoints": {
            "/health": "Service health check",
            "/stats": "Service statistics",
            "/policies": "Knox policies in the store",
            "/policies/cilium": "Cilium policies for the latest knox policies",
            "/convert": "Convert knox policies to cilium policies",
            "/discovery/cycle": "Run a discovery cycle"
        }
    }


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(orchestrator: PolicyDiscoveryOrchestrator = Depends(get_orchestrator)):
    """Health check endpoint"""
    collector = orchestrator.collector
    error = str(collector.last_error) if collector is not None and collector.last_error else None

    return {
        "status": "degraded" if error else "healthy",
        "collector_running": bool(collector is not None and collector.running),
        "buffer_size": len(orchestrator.buffer),
        "policies": orchestrator.store.status_counts(),
        "error": error,
    }


@app.get("/stats", response_model=StatsResponse, tags=["Monitoring"])
async def get_stats(orchestrator: PolicyDiscoveryOrchestrator = Depends(get_orchestrator)):
    """Get service statistics"""
    return orchestrator.get_stats()


@app.get("/policies", tags=["Policies"])
async def list_policies(status: Optional[str] = None,
                        namespace: Optional[str] = None,
                        orchestrator: PolicyDiscoveryOrchestrator = Depends(get_orchestrator)):
    """
    List knox policies in the store.

    - **status**: latest or outdated
    - **namespace**: only policies of this namespace
    """
    lifecycle = None
    if status:
        try:
            lifecycle = LifecycleStatus(status.lower())
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown policy status: {status}")

    return [p.to_dict() for p in orchestrator.store.list(status=lifecycle, namespace=namespace)]


@app.get("/policies/cilium", tags=["Policies"])
def list_cilium_policies(namespace: Optional[str] = None,
                         orchestrator: PolicyDiscoveryOrchestrator = Depends(get_orchestrator)):
    """Cilium policies synthesized from every latest knox policy"""
    return orchestrator.latest_cilium_policies(namespace=namespace)


@app.post("/convert", response_model=ConvertResponse, tags=["Policies"])
def convert(request: ConvertRequest,
            orchestrator: PolicyDiscoveryOrchestrator = Depends(get_orchestrator)):
    """
    Convert knox policies to cilium policies.

    - **policies**: knox network policies
    - **services**: optional service catalog for DNS rules
    """
    try:
        policies = parse_knox_documents(request.policies)
    except PolicyFormatError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if request.services is None:
        cilium_policies = orchestrator.synthesize(policies)
    else:
        services: List[Service] = [
            Service(namespace=s.namespace, service_name=s.service_name,
                    service_port=s.service_port, protocol=s.protocol.upper())
            for s in request.services
        ]
        config = orchestrator.config
        cilium_policies = convert_knox_policies_to_cilium(
            services,
            policies,
            api_version=config.output.api_version,
            kind=config.output.kind,
            dns_service=config.dns.service_name,
            dns_namespace=config.dns.namespace,
        )

    return {"policies": cilium_policies, "yaml": dump_cilium_policies_yaml(cilium_policies)}


@app.post("/discovery/cycle", response_model=CycleResponse, tags=["Discovery"])
def run_discovery_cycle(request: Optional[CycleRequest] = None,
                        orchestrator: PolicyDiscoveryOrchestrator = Depends(get_orchestrator)):
    """Run one discovery cycle now"""
    if request is not None and request.documents is not None:
        if request.driver not in ("mysql", "mongo"):
            raise HTTPException(status_code=400, detail=f"Unsupported document driver: {request.driver}")
        return orchestrator.run_document_cycle(request.driver, request.documents)

    return orchestrator.run_cycle()


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    """Handle HTTP exceptions"""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail}
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    """Handle general exceptions"""
    return JSONResponse(
        status_code=500,
        content={"detail": f"Internal server error: {str(exc)}"}
    )


def run(host: str = "0.0.0.0", port: int = 8000):
    uvicorn.run(app, host=host, port=port)
