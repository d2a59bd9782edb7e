from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional, Union

from trustloop.alerts.schema import AlertService
from trustloop.audit.writer import JsonlAuditSink, MemoryAuditSink
from trustloop.core.config import Settings
from trustloop.enforce.facade import PolicyEnforcementFacade
from trustloop.monitor.monitor import ContinuousSessionMonitor
from trustloop.monitor.scheduler import Scheduler
from trustloop.policy.engine import PolicyDecisionEngine, ResourcePolicy
from trustloop.policy.rules import RuleCatalog, default_catalog, load_catalog
from trustloop.risk.engine import RiskScoringEngine
from trustloop.risk.schema import DeviceTrust
from trustloop.risk.sources import BaselineBehaviorAnalyzer, DeviceRegistry, ResourceCatalog, StaticLocationSource

log = logging.getLogger("trustloop.wiring")


@dataclass
class Services:
    settings: Settings
    locations: StaticLocationSource
    devices: DeviceRegistry
    behavior: BaselineBehaviorAnalyzer
    resources: ResourceCatalog
    catalog: RuleCatalog
    audit: Union[JsonlAuditSink, MemoryAuditSink]
    alerts: AlertService
    risk: RiskScoringEngine
    policy: PolicyDecisionEngine
    monitor: ContinuousSessionMonitor
    facade: PolicyEnforcementFacade
    resource_policies: Mapping[str, ResourcePolicy] = field(default_factory=dict)

    def close(self) -> None:
        self.monitor.shutdown()
        if isinstance(self.audit, JsonlAuditSink):
            self.audit.close()


def build_services(
    settings: Settings,
    *,
    catalog: Optional[RuleCatalog] = None,
    resource_policies: Optional[Mapping[str, ResourcePolicy]] = None,
    scheduler: Optional[Scheduler] = None,
) -> Services:
    """Composition root: every collaborator is built here from explicit settings."""
    if catalog is None:
        catalog = load_catalog(settings.rules_path) if settings.rules_path else default_catalog()
    log.info("rule catalog version=%s rules=%d", catalog.version, len(catalog.rules))

    audit: Union[JsonlAuditSink, MemoryAuditSink]
    if settings.audit_path:
        audit = JsonlAuditSink(settings.audit_path).open()
    else:
        audit = MemoryAuditSink()

    locations = StaticLocationSource()
    devices = DeviceRegistry()
    behavior = BaselineBehaviorAnalyzer()
    resources = ResourceCatalog()
    alerts = AlertService()
    policies = dict(resource_policies or {})

    risk = RiskScoringEngine(locations=locations, devices=devices, behavior=behavior, resources=resources)
    policy = PolicyDecisionEngine(risk=risk, catalog=catalog, audit=audit, alerts=alerts, resource_policies=policies)
    monitor = ContinuousSessionMonitor(
        risk=risk,
        behavior=behavior,
        audit=audit,
        alerts=alerts,
        scheduler=scheduler,
        settings=settings.monitor,
    )
    facade = PolicyEnforcementFacade(policy=policy, monitor=monitor, timeout=settings.decision_timeout)

    return Services(
        settings=settings,
        locations=locations,
        devices=devices,
        behavior=behavior,
        resources=resources,
        catalog=catalog,
        audit=audit,
        alerts=alerts,
        risk=risk,
        policy=policy,
        monitor=monitor,
        facade=facade,
        resource_policies=policies,
    )


def seed_services(svc: Services, state: Mapping[str, object]) -> None:
    """
    Seed the baseline collaborators from a plain dict, e.g. a JSON file:
      {"devices": {"d1": {"compliant": true, "risk_score": 0.1}},
       "resources": {"payroll": 0.9},
       "behavior": {"u1": 0.2},
       "known_networks": ["10.0.0.0/8"], "suspicious_networks": ["203.0.113.0/24"]}
    """
    for device_id, raw in dict(state.get("devices") or {}).items():
        svc.devices.register(
            DeviceTrust(
                device_id=device_id,
                compliant=bool(raw.get("compliant", True)),
                risk_score=float(raw.get("risk_score", 0.0)),
                factors=tuple(raw.get("factors") or ()),
            )
        )
    for resource_id, sensitivity in dict(state.get("resources") or {}).items():
        svc.resources.sensitivity[resource_id] = float(sensitivity)
    for user_id, score in dict(state.get("behavior") or {}).items():
        svc.behavior.record(user_id, float(score))

    if "known_networks" in state or "suspicious_networks" in state:
        svc.locations.set_networks(
            state.get("known_networks") or svc.locations.known_networks,
            state.get("suspicious_networks") or [],
        )
