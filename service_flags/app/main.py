"""
HTTP front end for the flags evaluation service.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from shared.base_service import BaseService
from shared.config import FlagsConfig, get_config
from shared.metrics import MetricsCollector, get_metrics_collector

from .persistence.sticky import PersistentAssignmentOptions
from .rules.hashing import HashAlgorithm
from .rules.models import Subject
from .server import FlagsServer


class SubjectPayload(BaseModel):
    """Evaluated unit as sent by callers."""
    user_id: Optional[str] = Field(default=None, alias="userID")
    email: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = Field(default=None, alias="userAgent")
    country: Optional[str] = None
    locale: Optional[str] = None
    app_version: Optional[str] = Field(default=None, alias="appVersion")
    custom: Dict[str, Any] = Field(default_factory=dict)
    private_attributes: Dict[str, Any] = Field(default_factory=dict, alias="privateAttributes")
    custom_ids: Dict[str, str] = Field(default_factory=dict, alias="customIDs")
    environment: Dict[str, str] = Field(default_factory=dict, alias="statsigEnvironment")

    model_config = {"populate_by_name": True}

    def to_subject(self) -> Subject:
        return Subject(**self.model_dump(by_alias=False))


class PersistentAssignmentPayload(BaseModel):
    enforce_targeting: bool = False


class GateCheckRequest(BaseModel):
    user: SubjectPayload
    gate_name: str


class ConfigRequest(BaseModel):
    user: SubjectPayload
    config_name: str
    persistent_assignment: Optional[PersistentAssignmentPayload] = None


class LayerRequest(BaseModel):
    user: SubjectPayload
    layer_name: str
    persistent_assignment: Optional[PersistentAssignmentPayload] = None


class ClientInitializeRequest(BaseModel):
    user: SubjectPayload
    hash: HashAlgorithm = HashAlgorithm.DJB2
    include_local_overrides: bool = False
    target_app_id: Optional[str] = None


class GateOverrideRequest(BaseModel):
    name: str
    value: bool
    unit_id: Optional[str] = None


class ConfigOverrideRequest(BaseModel):
    name: str
    value: Dict[str, Any]
    unit_id: Optional[str] = None


def _assignment_options(payload: Optional[PersistentAssignmentPayload]) -> Optional[PersistentAssignmentOptions]:
    if payload is None:
        return None
    return PersistentAssignmentOptions(enforce_targeting=payload.enforce_targeting)


class FlagsService(BaseService):
    """Flags evaluation service implementation."""

    def __init__(self, config: Optional[FlagsConfig] = None, server: Optional[FlagsServer] = None,
                 metrics: Optional[MetricsCollector] = None):
        config = config or (server.config if server else get_config())
        metrics = metrics or (server.metrics if server else get_metrics_collector(config.service_name))
        self.server = server or FlagsServer(config, metrics=metrics)
        super().__init__(config.service_name, config, metrics)

        self._setup_flags_routes()

    def _setup_flags_routes(self):
        """Set up evaluation and override routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": self.service_name,
                "message": "Feature flag and experiment evaluation service",
                "version": "1.0.0",
                "capabilities": ["gates", "configs", "experiments", "layers", "sticky_bucketing", "overrides"]
            }

        @self.app.post("/gates/check")
        async def check_gate(request: GateCheckRequest):
            """Check a feature gate for a user."""
            result = self.server.check_gate(request.user.to_subject(), request.gate_name)
            return result.to_dict()

        @self.app.post("/configs/get")
        async def get_config(request: ConfigRequest):
            """Resolve a dynamic config or experiment for a user."""
            result = self.server.get_config(
                request.user.to_subject(),
                request.config_name,
                _assignment_options(request.persistent_assignment),
            )
            return result.to_dict()

        @self.app.post("/layers/get")
        async def get_layer(request: LayerRequest):
            """Resolve a layer for a user."""
            result = self.server.get_layer(
                request.user.to_subject(),
                request.layer_name,
                _assignment_options(request.persistent_assignment),
            )
            return result.to_dict()

        @self.app.post("/client/initialize")
        async def client_initialize(request: ClientInitializeRequest):
            """Pre-evaluate every gate, config and layer for a client."""
            response = self.server.get_client_initialize_response(
                request.user.to_subject(),
                hash_algorithm=request.hash,
                include_local_overrides=request.include_local_overrides,
                target_app_id=request.target_app_id,
            )
            if response is None:
                return {"has_updates": False}
            return response

        @self.app.post("/overrides/gates")
        async def override_gate(request: GateOverrideRequest):
            """Set a local gate override."""
            self.server.override_gate(request.name, request.value, request.unit_id)
            return {"status": "ok", "name": request.name}

        @self.app.post("/overrides/configs")
        async def override_config(request: ConfigOverrideRequest):
            """Set a local config override."""
            self.server.override_config(request.name, request.value, request.unit_id)
            return {"status": "ok", "name": request.name}

        @self.app.post("/overrides/layers")
        async def override_layer(request: ConfigOverrideRequest):
            """Set a local layer override."""
            self.server.override_layer(request.name, request.value, request.unit_id)
            return {"status": "ok", "name": request.name}

    async def on_startup(self) -> None:
        await self.server.initialize()
        self.logger.info("Flags service started", **self.server.store.snapshot.summary())

    async def on_shutdown(self) -> None:
        await self.server.shutdown()
        self.logger.info("Flags service stopped")

    async def _check_dependencies(self) -> Dict[str, Any]:
        self.server.reset_sync_timer_if_exited()
        return self.server.health()


def create_app(config: Optional[FlagsConfig] = None, server: Optional[FlagsServer] = None):
    """Create flags service application."""
    service = FlagsService(config=config, server=server)
    return service.app


if __name__ == "__main__":
    service = FlagsService()
    service.run()
