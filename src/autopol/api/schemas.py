# src/autopol/api/schemas.py
"""
Pydantic schemas for API requests and responses.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ServiceSpec(BaseModel):
    """Service port used to resolve DNS egress rules"""
    namespace: str
    service_name: str
    service_port: int = Field(..., gt=0, lt=65536)
    protocol: str = "TCP"


class ConvertRequest(BaseModel):
    """Knox policies to convert"""
    policies: List[Dict[str, Any]] = Field(..., description="Knox network policies")
    services: Optional[List[ServiceSpec]] = Field(
        default=None, description="Service catalog; the cluster catalog is used when omitted")


class ConvertResponse(BaseModel):
    policies: List[Dict[str, Any]]
    yaml: str


class CycleRequest(BaseModel):
    """Discovery cycle over persisted flow documents; drains the buffer when omitted"""
    driver: Optional[str] = Field(default=None, description="mysql or mongo")
    documents: Optional[List[Dict[str, Any]]] = None


class CycleResponse(BaseModel):
    cycle_id: str
    flows: int
    logs: int
    discovered: int
    new_policies: List[str]
    outdated: Dict[str, str]
    cilium_policies: List[Dict[str, Any]]
    error: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    collector_running: bool
    buffer_size: int
    policies: Dict[str, int]
    error: Optional[str] = None


class StatsResponse(BaseModel):
    """Statistics response"""
    orchestrator: Dict[str, Any]
    buffer_size: int
    policies: Dict[str, int]
    dns_domains: int
    collector: Optional[Dict[str, Any]] = None
    uptime: float
