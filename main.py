import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from config.settings import EXIT_CLOSING_ACTION, METRICS_ENABLED, SEARCH_MAX_DEVIATION
from core.connection_manager import ConnectionManager, HostVmSource
from core.errors import (
    ConnectionFailureError,
    UnexpectedVMStateError,
    UnknownPortRuleError,
    UnknownVirtualMachineError,
    VirtualToolError,
)
from core.host_manager import HostManager
from core.logger import log_event
from core.metrics import REQUEST_COUNT, REQUEST_LATENCY
from core.search_manager import SearchManager
from core.vm_controller import VMController
from schemas.machines import PhysicalMachine, VirtualMachine
from schemas.types import ClosingAction
from schemas.vm_schema import (
    CloneSchema,
    ConnectSchema,
    DisconnectSchema,
    HostSchema,
    PortRuleAddSchema,
    PortRuleDeleteSchema,
    RegisterSchema,
    SearchSchema,
    VMTargetSchema,
)

connection_manager = ConnectionManager()
vm_controller = VMController(connection_manager)
search_manager = SearchManager(
    connection_manager,
    HostVmSource(connection_manager),
    max_deviation=SEARCH_MAX_DEVIATION,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    log_event(f"[app] Started, search deviation={search_manager.max_deviation}%")
    yield
    closing_action = ClosingAction(EXIT_CLOSING_ACTION)
    connection_manager.close(closing_action)
    log_event(f"[app] Stopped, all physical machines disconnected (closing action {closing_action.value})")


app = FastAPI(
    title="Virtual Tool Manager API",
    description=(
        "Manage virtual machines spread over several libvirt hosts.\n\n"
        "Features:\n"
        "- Connect / disconnect physical machines (libvirt remote URIs)\n"
        "- VM lifecycle: start, stop, clone, register, remove\n"
        "- NAT port-forwarding rules\n"
        "- Fleet-wide VM search (exact or tolerant)\n"
        "- Prometheus metrics"
    ),
    version="1.0.0",
    lifespan=lifespan,
)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    endpoint = request.url.path
    method = request.method

    if not METRICS_ENABLED or endpoint == "/metrics":
        return await call_next(request)

    start_time = time.time()
    try:
        response = await call_next(request)
        return response
    finally:
        duration = time.time() - start_time
        REQUEST_COUNT.labels(method=method, endpoint=endpoint).inc()
        REQUEST_LATENCY.labels(endpoint=endpoint).observe(duration)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, ConnectionFailureError):
        return HTTPException(status_code=503, detail=str(e))
    if isinstance(e, (UnknownVirtualMachineError, UnknownPortRuleError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, UnexpectedVMStateError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


def _host_out(host: PhysicalMachine) -> dict:
    return host.model_dump(mode="json", exclude={"password"})


def _vm_out(vm: VirtualMachine) -> dict:
    data = vm.model_dump(mode="json", exclude={"host"})
    data["host"] = _host_out(vm.host)
    return data


def _host_manager(host: PhysicalMachine) -> HostManager:
    if not connection_manager.is_connected(host):
        raise HTTPException(status_code=404, detail=f"Physical machine {host} is not connected")
    return connection_manager.host_manager(host)


def _find_vm(target: VMTargetSchema) -> VirtualMachine:
    manager = _host_manager(target.host)
    if target.vm_id is not None:
        return manager.find_virtual_machine_by_id(target.vm_id)
    return manager.find_virtual_machine_by_name(target.vm_name)


# ----------------------------------------------------------------------
# Routes
# ----------------------------------------------------------------------
@app.get("/", tags=["System"])
def root():
    return {
        "message": "Virtual Tool Manager API is running",
        "version": app.version,
    }


@app.post("/hosts/connect", tags=["Hosts"])
def connect_host(payload: ConnectSchema):
    try:
        connection_manager.connect_to(payload.host, retry_delay_ms=payload.retry_delay_ms)
        return {"status": "connected", "host": _host_out(payload.host)}
    except VirtualToolError as e:
        raise _http_error(e) from e


@app.post("/hosts/disconnect", tags=["Hosts"])
def disconnect_host(payload: DisconnectSchema):
    if not connection_manager.disconnect_from(payload.host, payload.closing_action):
        raise HTTPException(status_code=404, detail=f"Physical machine {payload.host} is not connected")
    return {"status": "disconnected", "host": _host_out(payload.host)}


@app.get("/hosts", tags=["Hosts"])
def list_hosts():
    return {"hosts": [_host_out(host) for host in connection_manager.get_connected_physical_machines()]}


@app.post("/hosts/vms", tags=["Hosts"])
def list_host_vms(payload: HostSchema):
    try:
        vms = _host_manager(payload.host).get_virtual_machines()
        return {"vms": [_vm_out(vm) for vm in vms]}
    except VirtualToolError as e:
        raise _http_error(e) from e


@app.post("/vms/register", tags=["VM Management"])
def register_vm(payload: RegisterSchema):
    try:
        vm = _host_manager(payload.host).register_virtual_machine(payload.domain_xml)
        return {"status": "registered", "vm": _vm_out(vm)}
    except (VirtualToolError, ValueError) as e:
        raise _http_error(e) from e


@app.post("/vms/start", tags=["VM Management"])
def start_vm(payload: VMTargetSchema):
    try:
        vm = _find_vm(payload)
        vm_controller.start_vm(vm)
        return {"status": "started", "vm": _vm_out(vm)}
    except (VirtualToolError, ValueError) as e:
        raise _http_error(e) from e


@app.post("/vms/stop", tags=["VM Management"])
def stop_vm(payload: VMTargetSchema):
    try:
        vm = _find_vm(payload)
        vm_controller.shut_down_vm(vm)
        return {"status": "stopped", "vm": _vm_out(vm)}
    except (VirtualToolError, ValueError) as e:
        raise _http_error(e) from e


@app.post("/vms/state", tags=["VM Management"])
def vm_state(payload: VMTargetSchema):
    try:
        vm = _find_vm(payload)
        return {"vm": _vm_out(vm), "state": vm_controller.get_vm_state(vm)}
    except (VirtualToolError, ValueError) as e:
        raise _http_error(e) from e


@app.post("/vms/clone", tags=["VM Management"])
def clone_vm(payload: CloneSchema):
    try:
        vm = _find_vm(payload)
        clone = _host_manager(payload.host).clone_virtual_machine(
            vm, payload.clone_type, clone_name=payload.clone_name
        )
        return {"status": "cloned", "vm": _vm_out(clone)}
    except (VirtualToolError, ValueError) as e:
        raise _http_error(e) from e


@app.post("/vms/remove", tags=["VM Management"])
def remove_vm(payload: VMTargetSchema):
    try:
        vm = _find_vm(payload)
        _host_manager(payload.host).remove_virtual_machine(vm)
        return {"status": "removed", "vm": _vm_out(vm)}
    except (VirtualToolError, ValueError) as e:
        raise _http_error(e) from e


@app.post("/vms/port-rules", tags=["Port Forwarding"])
def list_port_rules(payload: VMTargetSchema):
    try:
        vm = _find_vm(payload)
        rules = vm_controller.get_port_rules(vm)
        return {"vm": _vm_out(vm), "rules": [rule.model_dump(mode="json") for rule in rules]}
    except (VirtualToolError, ValueError) as e:
        raise _http_error(e) from e


@app.post("/vms/port-rules/add", tags=["Port Forwarding"])
def add_port_rule(payload: PortRuleAddSchema):
    try:
        vm = _find_vm(payload)
        vm_controller.add_port_rule(vm, payload.rule)
        return {"status": "added", "rule": payload.rule.model_dump(mode="json")}
    except (VirtualToolError, ValueError) as e:
        raise _http_error(e) from e


@app.post("/vms/port-rules/delete", tags=["Port Forwarding"])
def delete_port_rule(payload: PortRuleDeleteSchema):
    try:
        vm = _find_vm(payload)
        if payload.rule_name:
            vm_controller.delete_port_rule(vm, payload.rule_name)
        else:
            vm_controller.delete_all_port_rules(vm)
        return {"status": "deleted", "rule_name": payload.rule_name}
    except (VirtualToolError, ValueError) as e:
        raise _http_error(e) from e


@app.post("/search", tags=["Search"])
def search_vms(payload: SearchSchema):
    manager = search_manager
    if payload.max_deviation is not None:
        manager = SearchManager(
            connection_manager,
            search_manager.vm_source,
            max_deviation=payload.max_deviation,
        )
    vms = manager.search(payload.criteria, payload.mode, payload.order)
    return {
        "mode": payload.mode.value,
        "max_deviation": manager.max_deviation,
        "vms": [_vm_out(vm) for vm in vms],
    }


@app.get("/metrics", tags=["Monitoring"])
def metrics():
    if not METRICS_ENABLED:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
