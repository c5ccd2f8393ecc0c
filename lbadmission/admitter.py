"""Admission checks and defaults for load balancers, drivers and backend groups."""

from __future__ import annotations

import json
from typing import Any, Optional, Protocol

from lbadmission.mutate import (
    FINALIZER_DELETE_LB,
    add_finalizer,
    backend_group_patches,
    driver_patches,
    encode_patches,
)
from lbadmission.review import (
    PATCH_TYPE_JSON_PATCH,
    AdmissionResponse,
    AdmissionReview,
    to_admission_response,
)
from lbadmission.validate import (
    NAMESPACE_SYSTEM,
    SYSTEM_DRIVER_PREFIX,
    aggregate,
    backend_group_update_fields_allowed,
    driver_updated_fields_allowed,
    get_backend_type,
    lb_updated_fields_allowed,
    validate_backend_group,
    validate_load_balancer,
    validate_load_balancer_driver,
)

DRIVER_DRAINING_LABEL = "lbcf.tkestack.io/driver-draining"
OPERATION_CREATE = "Create"
OPERATION_UPDATE = "Update"

_TRUE_VALUES = {"1", "t", "T", "TRUE", "true", "True"}


class NotFoundError(LookupError):
    """Raised by a lister when the requested object does not exist."""


class ObjectLister(Protocol):
    def get(self, namespace: str, name: str) -> dict: ...

    def list(self) -> list[dict]: ...


class WebhookInvoker(Protocol):
    def call_validate_load_balancer(self, driver: dict, request: dict) -> dict: ...

    def call_validate_backend(self, driver: dict, request: dict) -> dict: ...


def get_driver_namespace(driver_name: str, namespace: str) -> str:
    """Drivers whose name has the system prefix live in the system namespace."""
    if driver_name.startswith(SYSTEM_DRIVER_PREFIX):
        return NAMESPACE_SYSTEM
    return namespace


def is_driver_draining(driver: dict) -> bool:
    """Report whether the driver carries a true draining label."""
    labels = _meta(driver).get("labels") or {}
    return labels.get(DRIVER_DRAINING_LABEL) in _TRUE_VALUES


def _meta(obj: Optional[dict]) -> dict:
    return (obj or {}).get("metadata") or {}


def _spec(obj: Optional[dict]) -> dict:
    return (obj or {}).get("spec") or {}


def _is_deleting(obj: Optional[dict]) -> bool:
    return _meta(obj).get("deletionTimestamp") is not None


def _decode(raw: bytes) -> dict:
    data = json.loads(raw)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


def _patched(patches: list) -> AdmissionResponse:
    return AdmissionResponse(
        allowed=True,
        patch=encode_patches(patches),
        patch_type=PATCH_TYPE_JSON_PATCH,
    )


def _deny(message: str) -> AdmissionResponse:
    return to_admission_response(message)


class Admitter:
    """Validating and mutating admission logic backed by listers and a webhook invoker."""

    def __init__(self, lb_lister: ObjectLister, driver_lister: ObjectLister,
                 backend_lister: ObjectLister, invoker: WebhookInvoker) -> None:
        self.lb_lister = lb_lister
        self.driver_lister = driver_lister
        self.backend_lister = backend_lister
        self.invoker = invoker

    # mutating

    def mutate_lb(self, review: AdmissionReview) -> AdmissionResponse:
        try:
            obj = _decode(review.request.object)
        except ValueError as err:
            return to_admission_response(err)
        finalizers = _meta(obj).get("finalizers") or []
        return _patched([add_finalizer(not finalizers, FINALIZER_DELETE_LB)])

    def mutate_driver(self, review: AdmissionReview) -> AdmissionResponse:
        try:
            obj = _decode(review.request.object)
        except ValueError as err:
            return to_admission_response(err)
        return _patched(driver_patches(obj))

    def mutate_backend_group(self, review: AdmissionReview) -> AdmissionResponse:
        try:
            obj = _decode(review.request.object)
        except ValueError as err:
            return to_admission_response(err)
        return _patched(backend_group_patches(obj))

    # load balancers

    def validate_load_balancer_create(self, review: AdmissionReview) -> AdmissionResponse:
        try:
            lb = _decode(review.request.object)
        except ValueError as err:
            return _deny(f"decode LoadBalancer failed: {err}")
        errors = validate_load_balancer(lb)
        if errors:
            return _deny(aggregate(errors))

        spec = _spec(lb)
        driver_name = spec.get("lbDriver", "")
        driver_ns = get_driver_namespace(driver_name, _meta(lb).get("namespace", ""))
        try:
            driver = self.driver_lister.get(driver_ns, driver_name)
        except Exception as err:
            return _deny(f"retrieve driver {driver_ns}/{driver_name} failed: {err}")
        if is_driver_draining(driver):
            return _deny(f'driver "{driver_name}" is draining, all LoadBalancer creating '
                         "operation for that dirver is denied")
        if _is_deleting(driver):
            return _deny(f'driver "{driver_name}" is deleting, all LoadBalancer creating '
                         "operation for that dirver is denied")
        request = {
            "lbSpec": spec.get("lbSpec"),
            "operation": OPERATION_CREATE,
            "attributes": spec.get("attributes"),
        }
        return self._call_validate_lb(driver, request)

    def validate_load_balancer_update(self, review: AdmissionReview) -> AdmissionResponse:
        try:
            cur = _decode(review.request.object)
            old = _decode(review.request.old_object)
        except ValueError as err:
            return _deny(f"decode LoadBalancer failed: {err}")
        allowed, msg = lb_updated_fields_allowed(cur, old)
        if not allowed:
            return _deny(msg)
        errors = validate_load_balancer(cur)
        if errors:
            return _deny(aggregate(errors))

        spec = _spec(cur)
        driver_name = spec.get("lbDriver", "")
        driver_ns = get_driver_namespace(driver_name, _meta(cur).get("namespace", ""))
        try:
            driver = self.driver_lister.get(driver_ns, driver_name)
        except Exception as err:
            return _deny(f"retrieve driver {driver_ns}/{driver_name} failed: {err}")
        request = {
            "lbSpec": spec.get("lbSpec"),
            "operation": OPERATION_UPDATE,
            "attributes": spec.get("attributes"),
            "oldAttributes": _spec(old).get("attributes"),
        }
        return self._call_validate_lb(driver, request)

    def validate_load_balancer_delete(self, review: AdmissionReview) -> AdmissionResponse:
        return to_admission_response(None)

    def _call_validate_lb(self, driver: dict, request: dict) -> AdmissionResponse:
        try:
            result = self.invoker.call_validate_load_balancer(driver, request)
        except Exception as err:
            return _deny(f"call webhook error, webhook: validateLoadBalancer, err: {err}")
        if not result.get("succ"):
            return _deny(f"invalid LoadBalancer: {result.get('msg', '')}")
        return to_admission_response(None)

    # drivers

    def validate_driver_create(self, review: AdmissionReview) -> AdmissionResponse:
        try:
            driver = _decode(review.request.object)
        except ValueError as err:
            return _deny(f"decode LoadBalancerDriver failed: {err}")
        errors = validate_load_balancer_driver(driver)
        if errors:
            return _deny(aggregate(errors))
        return to_admission_response(None)

    def validate_driver_update(self, review: AdmissionReview) -> AdmissionResponse:
        try:
            cur = _decode(review.request.object)
            old = _decode(review.request.old_object)
        except ValueError as err:
            return _deny(f"decode LoadBalancerDriver failed: {err}")
        allowed, msg = driver_updated_fields_allowed(cur, old)
        if not allowed:
            return _deny(msg)
        errors = validate_load_balancer_driver(cur)
        if errors:
            return _deny(aggregate(errors))
        return to_admission_response(None)

    def validate_driver_delete(self, review: AdmissionReview) -> AdmissionResponse:
        name, namespace = review.request.name, review.request.namespace
        try:
            driver = self.driver_lister.get(namespace, name)
        except NotFoundError:
            return to_admission_response(None)
        except Exception as err:
            return _deny(f"retrieve LoadBalancerDriver {namespace}/{name} failed: {err}")
        if not is_driver_draining(driver):
            return _deny(f'LoadBalancerDriver must be label with {DRIVER_DRAINING_LABEL}:"true" '
                         "before delete")
        try:
            remaining_lbs = self._by_driver(self.lb_lister, name, namespace)
        except Exception as err:
            return _deny(f"unable to list LoadBalancers for driver, err: {err}")
        if remaining_lbs:
            return _deny(f"all LoadBalancers must be deleted, {len(remaining_lbs)} remaining")
        try:
            remaining_records = self._by_driver(self.backend_lister, name, namespace)
        except Exception as err:
            return _deny(f"unable to list BackendRecords for driver, err: {err}")
        if remaining_records:
            return _deny(f"all BackendRecord must be deregistered, "
                         f"{len(remaining_records)} remaining")
        return to_admission_response(None)

    @staticmethod
    def _by_driver(lister: ObjectLister, driver_name: str, driver_namespace: str) -> list[dict]:
        return [
            obj for obj in lister.list() or []
            if (driver_namespace == NAMESPACE_SYSTEM
                or _meta(obj).get("namespace", "") == driver_namespace)
            and _spec(obj).get("lbDriver", "") == driver_name
        ]

    # backend groups

    def validate_backend_group_create(self, review: AdmissionReview) -> AdmissionResponse:
        try:
            group = _decode(review.request.object)
        except ValueError as err:
            return _deny(f"decode BackendGroup failed: {err}")
        errors = validate_backend_group(group)
        if errors:
            return _deny(aggregate(errors))

        namespace = _meta(group).get("namespace", "")
        try:
            lb = self.lb_lister.get(namespace, _spec(group).get("lbName", ""))
        except Exception:
            return _deny("loadbalancer not found, LoadBalancer must be created before BackendGroup")
        if _is_deleting(lb):
            return _deny(f'operation denied: loadbalancer "{_meta(lb).get("name", "")}" is deleting')
        driver_name = _spec(lb).get("lbDriver", "")
        driver_ns = get_driver_namespace(driver_name, namespace)
        try:
            driver = self.driver_lister.get(driver_ns, driver_name)
        except Exception as err:
            return _deny(f"retrieve driver {driver_ns}/{driver_name} failed: {err}")
        if is_driver_draining(driver):
            return _deny(f'driver "{driver_name}" is draining, all BackendGroup creating '
                         "operation for that dirver is denied")
        if _is_deleting(driver):
            return _deny(f'driver "{driver_name}" is deleting, all BackendGroup creating '
                         "operation for that dirver is denied")
        request = {
            "backendType": get_backend_type(group),
            "lbInfo": ((lb or {}).get("status") or {}).get("lbInfo"),
            "operation": OPERATION_CREATE,
            "parameters": _spec(group).get("parameters"),
        }
        return self._call_validate_backend(driver, request)

    def validate_backend_group_update(self, review: AdmissionReview) -> AdmissionResponse:
        try:
            cur = _decode(review.request.object)
            old = _decode(review.request.old_object)
        except ValueError as err:
            return _deny(f"decode LoadBalancerDriver failed: {err}")
        allowed, msg = backend_group_update_fields_allowed(cur, old)
        if not allowed:
            return _deny(msg)
        errors = validate_backend_group(cur)
        if errors:
            return _deny(aggregate(errors))

        namespace = _meta(cur).get("namespace", "")
        try:
            lb = self.lb_lister.get(namespace, _spec(cur).get("lbName", ""))
        except Exception:
            return _deny("loadbalancer not found, LoadBalancer must be created before BackendGroup")
        driver_name = _spec(lb).get("lbDriver", "")
        driver_ns = get_driver_namespace(driver_name, namespace)
        try:
            driver = self.driver_lister.get(driver_ns, driver_name)
        except Exception as err:
            return _deny(f"retrieve driver {driver_ns}/{driver_name} failed: {err}")
        request = {
            "backendType": get_backend_type(cur),
            "lbInfo": ((lb or {}).get("status") or {}).get("lbInfo"),
            "operation": OPERATION_UPDATE,
            "parameters": _spec(cur).get("parameters"),
            "oldParameters": _spec(old).get("parameters"),
        }
        return self._call_validate_backend(driver, request)

    def validate_backend_group_delete(self, review: AdmissionReview) -> AdmissionResponse:
        return to_admission_response(None)

    def _call_validate_backend(self, driver: dict, request: dict) -> AdmissionResponse:
        try:
            result = self.invoker.call_validate_backend(driver, request)
        except Exception as err:
            return _deny(f"call webhook error, webhook validateBackend, err: {err}")
        if not result.get("succ"):
            return _deny(f"invalid Backend, msg: {result.get('msg', '')}")
        return to_admission_response(None)