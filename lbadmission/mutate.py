"""JSON patches that fill in defaults on admitted objects."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from lbadmission.validate import KNOWN_WEBHOOKS

PATCH_OP_ADD = "add"
PATCH_OP_REPLACE = "replace"
FINALIZER_DELETE_LB = "lbcf.tkestack.io/delete-load-loadbalancer"
LABEL_LB_NAME = "lbcf.tkestack.io/lb-name"
DEFAULT_WEBHOOK_TIMEOUT = "10s"


@dataclass
class Patch:
    """One JSON patch operation."""

    op: str
    path: str
    value: Any = None

    def to_dict(self) -> dict:
        return {"op": self.op, "path": self.path, "value": self.value}


def _escape(token: str) -> str:
    return token.replace("~", "~0").replace("/", "~1")


def add_label(create_label: bool, is_replace: bool, key: str, value: str) -> Patch:
    if create_label:
        return Patch(PATCH_OP_ADD, "/metadata/labels", {key: value})
    op = PATCH_OP_REPLACE if is_replace else PATCH_OP_ADD
    return Patch(op, "/metadata/labels/" + _escape(key), value)


def add_finalizer(create_finalizer: bool, finalizer: str) -> Patch:
    if create_finalizer:
        return Patch(PATCH_OP_ADD, "/metadata/finalizers", [finalizer])
    return Patch(PATCH_OP_ADD, "/metadata/finalizers/-", finalizer)


def default_svc_protocol() -> Patch:
    return Patch(PATCH_OP_ADD, "/spec/service/port/protocol", "TCP")


def default_pod_protocol() -> Patch:
    return Patch(PATCH_OP_ADD, "/spec/pods/port/protocol", "TCP")


def backend_group_patches(group: dict) -> list[Patch]:
    """Patches that label a backend group with its LB name and default the protocol."""
    patches: list[Patch] = []
    labels = (group.get("metadata") or {}).get("labels")
    spec = group.get("spec") or {}
    lb_name = spec.get("lbName", "")
    skip = replace = False
    if labels is not None and LABEL_LB_NAME in labels:
        if labels[LABEL_LB_NAME] == lb_name:
            skip = True
        else:
            replace = True
    if not skip:
        patches.append(add_label(not labels, replace, LABEL_LB_NAME, lb_name))

    service, pods = spec.get("service"), spec.get("pods")
    if service is not None and not (service.get("port") or {}).get("protocol"):
        patches.append(default_svc_protocol())
    elif pods is not None and not (pods.get("port") or {}).get("protocol"):
        patches.append(default_pod_protocol())
    return patches


def driver_patches(driver: dict) -> list[Patch]:
    """Patches that add every missing known webhook with the default timeout."""
    patches: list[Patch] = []
    webhooks = (driver.get("spec") or {}).get("webhooks") or []
    if not webhooks:
        patches.append(Patch(PATCH_OP_ADD, "/spec/webhooks", []))
    existing = {wh.get("name", "") for wh in webhooks}
    patches.extend(
        Patch(PATCH_OP_ADD, "/spec/webhooks/-", {"name": known, "timeout": DEFAULT_WEBHOOK_TIMEOUT})
        for known in KNOWN_WEBHOOKS
        if known not in existing
    )
    return patches


def encode_patches(patches: list[Patch]) -> bytes:
    """Encode patches as compact JSON; an empty list encodes as null."""
    if not patches:
        return b"null"
    return json.dumps([p.to_dict() for p in patches], separators=(",", ":")).encode()