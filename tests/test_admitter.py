import copy
import json

import pytest

from lbadmission.admitter import (
    DRIVER_DRAINING_LABEL,
    Admitter,
    NotFoundError,
    get_driver_namespace,
    is_driver_draining,
)
from lbadmission.mutate import DEFAULT_WEBHOOK_TIMEOUT, LABEL_LB_NAME
from lbadmission.review import AdmissionRequest, AdmissionReview
from lbadmission.validate import KNOWN_WEBHOOKS, parse_duration

TS = "2019-01-01T00:00:00Z"


class SuccLister:
    def __init__(self, get=None, items=None):
        self._get = get
        self._items = items or []

    def get(self, namespace, name):
        return self._get

    def list(self):
        return self._items


class NotFoundLister:
    def get(self, namespace, name):
        raise NotFoundError(f'"{name}" not found')

    def list(self):
        return []


class SuccInvoker:
    def call_validate_load_balancer(self, driver, request):
        return {"succ": True, "msg": "fake succ"}

    def call_validate_backend(self, driver, request):
        return {"succ": True, "msg": "fake succ"}


class FailInvoker:
    def call_validate_load_balancer(self, driver, request):
        return {"succ": False, "msg": "fake fail"}

    def call_validate_backend(self, driver, request):
        return {"succ": False, "msg": "fake fail"}


def _review(obj=None, old=None, raw=None, **kw):
    return AdmissionReview(request=AdmissionRequest(
        object=raw if raw is not None else json.dumps(obj).encode() if obj is not None else b"",
        old_object=json.dumps(old).encode() if old is not None else b"",
        **kw,
    ))


def _unescape(token):
    return token.replace("~1", "/").replace("~0", "~")


def _apply(doc, patch_bytes):
    doc = copy.deepcopy(doc)
    for op in json.loads(patch_bytes):
        tokens = [_unescape(t) for t in op["path"].split("/")[1:]]
        target = doc
        for t in tokens[:-1]:
            target = target.setdefault(t, {}) if isinstance(target, dict) else target[int(t)]
        last = tokens[-1]
        if isinstance(target, list):
            if last == "-":
                target.append(op["value"])
            else:
                target.insert(int(last), op["value"])
        else:
            if op["op"] == "replace" and last not in target:
                raise KeyError(last)
            target[last] = op["value"]
    return doc


def _default_admitter(invoker=None):
    return Admitter(SuccLister(), SuccLister(), SuccLister(), invoker or SuccInvoker())


def _all_webhooks(timeouts=None):
    timeouts = timeouts or {}
    return [{"name": n, "timeout": timeouts.get(n, "15s")} for n in KNOWN_WEBHOOKS]


def test_mutate_lb_creates_finalizers():
    rsp = _default_admitter().mutate_lb(_review({"metadata": {}}))
    assert rsp.allowed
    assert rsp.patch == (b'[{"op":"add","path":"/metadata/finalizers",'
                         b'"value":["lbcf.tkestack.io/delete-load-loadbalancer"]}]')


def test_mutate_lb_appends_finalizer():
    rsp = _default_admitter().mutate_lb(_review({"metadata": {"finalizers": ["finalizer1"]}}))
    assert rsp.allowed
    assert rsp.patch == (b'[{"op":"add","path":"/metadata/finalizers/-",'
                         b'"value":"lbcf.tkestack.io/delete-load-loadbalancer"}]')


def test_mutate_lb_decode_error():
    rsp = _default_admitter().mutate_lb(_review(raw=b"invalid json"))
    assert not rsp.allowed


def test_mutate_driver_adds_all_webhooks():
    driver = {"metadata": {"name": "test-driver", "namespace": "test"},
              "spec": {"driverType": "Webhook", "url": "http://test-driver.com"}}
    rsp = _default_admitter().mutate_driver(_review(driver))
    assert rsp.allowed
    modified = _apply(driver, rsp.patch)
    hooks = modified["spec"]["webhooks"]
    assert len(hooks) == len(KNOWN_WEBHOOKS)
    assert {h["name"] for h in hooks} == set(KNOWN_WEBHOOKS)
    for h in hooks:
        assert parse_duration(h["timeout"]) == parse_duration(DEFAULT_WEBHOOK_TIMEOUT) == 10.0


def test_mutate_driver_partially_specified():
    existing = {"validateLoadBalancer": "13s", "validateBackend": "15s"}
    driver = {"metadata": {"name": "test-driver", "namespace": "test"},
              "spec": {"driverType": "Webhook", "url": "http://test-driver.com",
                       "webhooks": [{"name": n, "timeout": t} for n, t in existing.items()]}}
    rsp = _default_admitter().mutate_driver(_review(driver))
    modified = _apply(driver, rsp.patch)
    hooks = {h["name"]: h for h in modified["spec"]["webhooks"]}
    assert len(modified["spec"]["webhooks"]) == len(KNOWN_WEBHOOKS)
    for known in KNOWN_WEBHOOKS:
        expected = existing.get(known, "10s")
        assert parse_duration(hooks[known]["timeout"]) == parse_duration(expected)


def _pod_group(labels=None):
    meta = {"name": "test-backendgroup", "namespace": "test"}
    if labels is not None:
        meta["labels"] = labels
    return {"metadata": meta,
            "spec": {"lbName": "test-lb",
                     "pods": {"port": {"portNumber": 80},
                              "byLabel": {"selector": {"key1": "value1"}}}}}


def test_mutate_backend_group_new_labels():
    group = _pod_group()
    rsp = _default_admitter().mutate_backend_group(_review(group))
    assert rsp.allowed
    modified = _apply(group, rsp.patch)
    assert modified["metadata"]["labels"][LABEL_LB_NAME] == "test-lb"
    assert modified["spec"]["pods"]["port"]["protocol"] == "TCP"


def test_mutate_backend_group_replaces_label():
    group = _pod_group({"key1": "v1", LABEL_LB_NAME: "a-random-value"})
    rsp = _default_admitter().mutate_backend_group(_review(group))
    assert rsp.allowed
    modified = _apply(group, rsp.patch)
    assert modified["metadata"]["labels"]["key1"] == "v1"
    assert modified["metadata"]["labels"][LABEL_LB_NAME] == "test-lb"
    assert modified["spec"]["pods"]["port"]["protocol"] == "TCP"


def _driver(webhooks=None, name="test-driver", namespace="default", url="http://1.1.1.1:80"):
    spec = {"driverType": "Webhook", "url": url}
    if webhooks is not None:
        spec["webhooks"] = webhooks
    return {"metadata": {"name": name, "namespace": namespace}, "spec": spec}


@pytest.mark.parametrize("driver,expect", [
    (_driver(), False),
    (_driver([{"name": "validateBackend", "timeout": "20s"}]), False),
    (_driver([{"name": "validateLoadBalancer"}] + _all_webhooks()[1:]), False),
    (_driver(_all_webhooks({"validateLoadBalancer": "2m"})), False),
    (_driver(name="invalid-name", namespace="kube-system"), False),
    (_driver([{"name": "a-not-supported-webhook", "timeout": "10s"}]), False),
    (_driver(_all_webhooks({"validateLoadBalancer": "10s"})), True),
], ids=["not-configured", "partial", "timeout-not-set", "timeout-too-long",
        "invalid-name", "unsupported", "valid"])
def test_validate_driver_create(driver, expect):
    assert _default_admitter().validate_driver_create(_review(driver)).allowed is expect


def _draining_driver(value="true"):
    return {"metadata": {"labels": {DRIVER_DRAINING_LABEL: value}}}


def test_validate_driver_delete_allowed():
    a = Admitter(NotFoundLister(), SuccLister(get=_draining_driver()), NotFoundLister(), SuccInvoker())
    rsp = a.validate_driver_delete(_review())
    assert rsp.allowed, rsp.message


def test_validate_driver_delete_missing_driver_allowed():
    a = Admitter(NotFoundLister(), NotFoundLister(), NotFoundLister(), SuccInvoker())
    assert a.validate_driver_delete(_review(name="d", namespace="ns")).allowed


def test_validate_driver_delete_not_draining():
    a = Admitter(NotFoundLister(), SuccLister(get={"metadata": {"labels": {}}}),
                 NotFoundLister(), SuccInvoker())
    rsp = a.validate_driver_delete(_review())
    assert not rsp.allowed
    assert DRIVER_DRAINING_LABEL in rsp.message


def test_validate_driver_delete_lb_remaining():
    lb = {"metadata": {"deletionTimestamp": TS}}
    a = Admitter(SuccLister(get=lb, items=[lb]), SuccLister(get=_draining_driver()),
                 NotFoundLister(), SuccInvoker())
    rsp = a.validate_driver_delete(_review())
    assert not rsp.allowed
    assert rsp.message == "all LoadBalancers must be deleted, 1 remaining"


def test_validate_driver_delete_backend_remaining():
    record = {"metadata": {"deletionTimestamp": TS}}
    a = Admitter(NotFoundLister(), SuccLister(get=_draining_driver()),
                 SuccLister(items=[record]), SuccInvoker())
    rsp = a.validate_driver_delete(_review())
    assert not rsp.allowed
    assert rsp.message == "all BackendRecord must be deregistered, 1 remaining"


def test_validate_driver_update_cases():
    a = Admitter(SuccLister(), NotFoundLister(), SuccLister(), SuccInvoker())
    old = _driver(_all_webhooks({"validateLoadBalancer": "10s"}))
    cur = _driver(_all_webhooks({n: "30s" for n in KNOWN_WEBHOOKS[:4]}))
    assert a.validate_driver_update(_review(cur, old)).allowed
    cur_deleted = _driver([{"name": "validateLoadBalancer", "timeout": "30s"}])
    assert not a.validate_driver_update(_review(cur_deleted, old)).allowed


def test_validate_driver_update_forbidden_field():
    a = Admitter(SuccLister(), NotFoundLister(), SuccLister(), SuccInvoker())
    rsp = a.validate_driver_update(_review(_driver(url="http://another.url.com:80"), _driver()))
    assert not rsp.allowed
    assert rsp.message == "updating URL is prohibited"


def test_validate_driver_update_cur_invalid():
    a = Admitter(SuccLister(), NotFoundLister(), SuccLister(), SuccInvoker())
    rsp = a.validate_driver_update(_review(_driver(url="invalid url"), _driver(url="invalid url")))
    assert not rsp.allowed


def _lb(policy="Always", min_period="30s"):
    ensure = {"policy": policy}
    if min_period is not None:
        ensure["minPeriod"] = min_period
    return {"spec": {"lbDriver": "test-driver", "lbSpec": {"k1": "v1"},
                     "attributes": {"a1": "v1"}, "ensurePolicy": ensure}}


def test_validate_lb_create_driver_not_exist():
    a = Admitter(SuccLister(), NotFoundLister(), SuccLister(), SuccInvoker())
    rsp = a.validate_load_balancer_create(_review(_lb()))
    assert not rsp.allowed
    assert rsp.message.startswith("retrieve driver /test-driver failed")


def test_validate_lb_create_driver_draining():
    driver = {"metadata": {"name": "test-driver", "labels": {DRIVER_DRAINING_LABEL: "True"}}}
    a = Admitter(SuccLister(), SuccLister(get=driver), SuccLister(), SuccInvoker())
    rsp = a.validate_load_balancer_create(_review(_lb()))
    assert not rsp.allowed
    assert "is draining" in rsp.message


def test_validate_lb_create_driver_deleting():
    driver = {"metadata": {"name": "test-driver", "deletionTimestamp": TS}}
    a = Admitter(SuccLister(), SuccLister(get=driver), SuccLister(), SuccInvoker())
    rsp = a.validate_load_balancer_create(_review(_lb()))
    assert not rsp.allowed
    assert "is deleting" in rsp.message


def test_validate_lb_create_webhook_fail():
    driver = {"metadata": {"name": "test-driver"},
              "spec": {"driverType": "Webhook", "url": "http://localhost:23456"}}
    a = Admitter(SuccLister(), SuccLister(get=driver), SuccLister(), FailInvoker())
    rsp = a.validate_load_balancer_create(_review(_lb()))
    assert not rsp.allowed
    assert rsp.message == "invalid LoadBalancer: fake fail"


def test_validate_lb_create_success():
    a = Admitter(SuccLister(), SuccLister(get={}), SuccLister(), SuccInvoker())
    assert a.validate_load_balancer_create(_review(_lb())).allowed


def _old_lb():
    return {"spec": {"lbDriver": "test-driver", "lbSpec": {"k1": "v1"}, "attributes": {"a1": "v1"}}}


def _update_admitter():
    return Admitter(SuccLister(), SuccLister(get={}), SuccLister(), SuccInvoker())


def test_validate_lb_update():
    cur = _lb(min_period="1m")
    cur["spec"]["attributes"] = {"a2": "v2"}
    assert _update_admitter().validate_load_balancer_update(_review(cur, _old_lb())).allowed


def test_validate_lb_update_forbidden_field():
    cur = _old_lb()
    cur["spec"]["lbSpec"] = {"k1": "v1", "k2": "v2"}
    rsp = _update_admitter().validate_load_balancer_update(_review(cur, _old_lb()))
    assert not rsp.allowed
    assert rsp.message == "updating lbSpec is prohibited"


def test_validate_lb_update_cur_invalid():
    cur = _lb(policy="IfNotSucc", min_period="1m")
    cur["spec"]["attributes"] = {"a2": "v2"}
    assert not _update_admitter().validate_load_balancer_update(_review(cur, _old_lb())).allowed


def test_validate_lb_delete():
    a = Admitter(NotFoundLister(), NotFoundLister(), NotFoundLister(), SuccInvoker())
    rsp = a.validate_load_balancer_delete(_review(name="name", namespace="namespace", uid="12345"))
    assert rsp.allowed


def _group(port=80):
    return {"spec": {"lbName": "test-lb",
                     "pods": {"port": {"portNumber": port, "protocol": "TCP"},
                              "byLabel": {"selector": {"k1": "v1"}, "except": ["pod-0"]}},
                     "parameters": {"p1": "v1"},
                     "ensurePolicy": {"policy": "Always", "minPeriod": "30s"}}}


def _group_admitter(invoker):
    lb = {"metadata": {"name": "test-lb"}, "spec": {"lbDriver": "test-driver"}}
    driver = {"metadata": {"name": "test-driver"}}
    return Admitter(SuccLister(get=lb), SuccLister(get=driver), SuccLister(), invoker)


def test_validate_backend_group_create():
    assert _group_admitter(SuccInvoker()).validate_backend_group_create(_review(_group())).allowed


def test_validate_backend_group_create_invalid_group():
    a = Admitter(SuccLister(), SuccLister(), SuccLister(), FailInvoker())
    assert not a.validate_backend_group_create(_review(_group(port=0))).allowed


def test_validate_backend_group_create_lb_not_found():
    a = Admitter(NotFoundLister(), SuccLister(), SuccLister(), FailInvoker())
    rsp = a.validate_backend_group_create(_review(_group()))
    assert not rsp.allowed
    assert rsp.message == "loadbalancer not found, LoadBalancer must be created before BackendGroup"


def test_validate_backend_group_create_lb_deleting():
    lb = {"metadata": {"deletionTimestamp": TS}}
    a = Admitter(SuccLister(get=lb), SuccLister(), SuccLister(), FailInvoker())
    rsp = a.validate_backend_group_create(_review(_group()))
    assert not rsp.allowed
    assert "is deleting" in rsp.message


def test_validate_backend_group_create_webhook_fail():
    rsp = _group_admitter(FailInvoker()).validate_backend_group_create(_review(_group()))
    assert not rsp.allowed
    assert rsp.message == "invalid Backend, msg: fake fail"


def _bg_update_admitter():
    return Admitter(SuccLister(get={}), SuccLister(get={}), SuccLister(), SuccInvoker())


def test_validate_backend_group_update():
    old = {"spec": {"lbName": "test-loadbalancer",
                    "pods": {"port": {"portNumber": 80, "protocol": "TCP"},
                             "byLabel": {"selector": {"k1": "v1"}}},
                    "parameters": {"p1": "v1"}}}
    cur = {"spec": {"lbName": "test-loadbalancer",
                    "pods": {"port": {"portNumber": 8080, "protocol": "TCP"},
                             "byLabel": {"selector": {"k2": "v2"}}},
                    "parameters": {"p2": "v2"},
                    "ensurePolicy": {"policy": "Always"}}}
    assert _bg_update_admitter().validate_backend_group_update(_review(cur, old)).allowed


def _old_group():
    return {"spec": {"lbName": "test-loadbalancer",
                     "pods": {"port": {"portNumber": 80}, "byLabel": {"selector": {"k1": "v1"}}},
                     "parameters": {"p1": "v1"}}}


def test_validate_backend_group_update_forbidden_field():
    cur = {"spec": {"lbName": "test-loadbalancer", "static": ["pod-0"], "parameters": {"p1": "v1"}}}
    rsp = _bg_update_admitter().validate_backend_group_update(_review(cur, _old_group()))
    assert not rsp.allowed
    assert rsp.message == "changing backend type is prohibited"


def test_validate_backend_group_update_cur_invalid():
    cur = _old_group()
    cur["spec"]["ensurePolicy"] = {"policy": "IfNotSucc", "minPeriod": "10s"}
    assert not _bg_update_admitter().validate_backend_group_update(_review(cur, _old_group())).allowed


def test_validate_backend_group_delete():
    a = Admitter(NotFoundLister(), NotFoundLister(), NotFoundLister(), SuccInvoker())
    rsp = a.validate_backend_group_delete(_review(name="name", namespace="namespace", uid="12345"))
    assert rsp.allowed


def test_get_driver_namespace():
    assert get_driver_namespace("lbcf-driver", "default") == "kube-system"
    assert get_driver_namespace("test-driver", "default") == "default"


@pytest.mark.parametrize("value,expect", [("true", True), ("True", True), ("1", True),
                                          ("false", False), ("yes", False)])
def test_is_driver_draining(value, expect):
    assert is_driver_draining(_draining_driver(value)) is expect


def test_is_driver_draining_without_labels():
    assert is_driver_draining({"metadata": {}}) is False