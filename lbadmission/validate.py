"""Validation of load balancer drivers, load balancers and backend groups."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

NAMESPACE_SYSTEM = "kube-system"
SYSTEM_DRIVER_PREFIX = "lbcf-"
WEBHOOK_DRIVER = "Webhook"
POLICY_IF_NOT_SUCC = "IfNotSucc"
POLICY_ALWAYS = "Always"

KNOWN_WEBHOOKS = (
    "validateLoadBalancer",
    "createLoadBalancer",
    "ensureLoadBalancer",
    "deleteLoadBalancer",
    "validateBackend",
    "generateBackendAddr",
    "ensureBackendRegistration",
    "deregisterBackend",
)

BACKEND_SERVICE = "Service"
BACKEND_POD = "Pod"
BACKEND_STATIC = "Static"

REQUIRED = "Required value"
INVALID = "Invalid value"
FORBIDDEN = "Forbidden"
NOT_SUPPORTED = "Unsupported value"


def _fmt(value: Any) -> str:
    if isinstance(value, str):
        return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'
    return str(value)


@dataclass
class FieldError:
    """A validation error attached to a field path."""

    type: str
    field: str
    detail: str = ""
    bad_value: Any = None
    supported: list = field(default_factory=list)

    def __str__(self) -> str:
        if self.type in (REQUIRED, FORBIDDEN):
            text = f"{self.field}: {self.type}"
            return f"{text}: {self.detail}" if self.detail else text
        if self.type == NOT_SUPPORTED:
            text = f"{self.field}: {self.type}: {_fmt(self.bad_value)}"
            if self.supported:
                text += ": supported values: " + ", ".join(_fmt(s) for s in self.supported)
            return text
        text = f"{self.field}: {self.type}: {_fmt(self.bad_value)}"
        return f"{text}: {self.detail}" if self.detail else text


def aggregate(errors: Iterable[FieldError]) -> str:
    """Join errors into one message, bracketed when there are several."""
    msgs = [str(e) for e in errors]
    if len(msgs) <= 1:
        return msgs[0] if msgs else ""
    return "[" + ", ".join(msgs) + "]"


_UNITS = {"ns": 1e-9, "us": 1e-6, "\u00b5s": 1e-6, "\u03bcs": 1e-6, "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|\u00b5s|\u03bcs|ms|s|m|h)")


def parse_duration(value: Any) -> float:
    """Parse a duration such as "1m30s" into seconds; numbers pass through."""
    if value is None or value == "":
        return 0.0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"invalid duration {value!r}")
    text = value
    sign = 1.0
    if text[:1] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if text == "0":
        return 0.0
    if not text:
        raise ValueError(f"invalid duration {value!r}")
    total = 0.0
    pos = 0
    while pos < len(text):
        m = _DURATION_PART.match(text, pos)
        if not m:
            raise ValueError(f"invalid duration {value!r}")
        total += float(m.group(1)) * _UNITS[m.group(2)]
        pos = m.end()
    return sign * total


def get_backend_type(group: dict) -> str:
    """Return which kind of backend a backend group selects."""
    spec = group.get("spec") or {}
    if spec.get("service") is not None:
        return BACKEND_SERVICE
    if spec.get("pods") is not None:
        return BACKEND_POD
    return BACKEND_STATIC


def _meta(obj: dict) -> dict:
    return obj.get("metadata") or {}


def _spec(obj: dict) -> dict:
    return obj.get("spec") or {}


def validate_load_balancer_driver(driver: dict) -> list[FieldError]:
    meta, spec = _meta(driver), _spec(driver)
    errs: list[FieldError] = []
    errs += _validate_driver_name(meta.get("name", ""), meta.get("namespace", ""), "metadata.name")
    errs += _validate_driver_type(spec.get("driverType", ""), "spec.driverType")
    errs += _validate_driver_url(spec.get("url", ""), "spec.url")
    errs += _validate_driver_webhooks(spec.get("webhooks") or [], "spec.webhooks")
    return errs


def validate_load_balancer(lb: dict) -> list[FieldError]:
    spec = _spec(lb)
    errs: list[FieldError] = []
    if not spec.get("lbDriver"):
        errs.append(FieldError(REQUIRED, "spec.lbDriver", "lbDriver must be specified"))
    if spec.get("ensurePolicy") is not None:
        errs += _validate_ensure_policy(spec["ensurePolicy"], "spec.ensurePolicy")
    return errs


def validate_backend_group(group: dict) -> list[FieldError]:
    spec = _spec(group)
    errs: list[FieldError] = []
    if spec.get("ensurePolicy") is not None:
        errs += _validate_ensure_policy(spec["ensurePolicy"], "spec.ensurePolicy")
    errs += _validate_backends(spec, "spec")
    return errs


def driver_updated_fields_allowed(cur: dict, old: dict) -> tuple[bool, str]:
    c, o = _spec(cur), _spec(old)
    if o.get("url", "") != c.get("url", ""):
        return False, "updating URL is prohibited"
    if o.get("driverType", "") != c.get("driverType", ""):
        return False, "updating driverType is prohibited"
    return True, ""


def lb_updated_fields_allowed(cur: dict, old: dict) -> tuple[bool, str]:
    c, o = _spec(cur), _spec(old)
    if c.get("lbDriver", "") != o.get("lbDriver", ""):
        return False, "updating lbDriver is prohibited"
    if c.get("lbSpec") != o.get("lbSpec"):
        return False, "updating lbSpec is prohibited"
    return True, ""


def backend_group_update_fields_allowed(cur: dict, old: dict) -> tuple[bool, str]:
    if _spec(cur).get("lbName", "") != _spec(old).get("lbName", ""):
        return False, "updating lbName is prohibited"
    if get_backend_type(cur) != get_backend_type(old):
        return False, "changing backend type is prohibited"
    return True, ""


def _validate_ensure_policy(raw: dict, path: str) -> list[FieldError]:
    errs: list[FieldError] = []
    policy = raw.get("policy", "")
    min_period = raw.get("minPeriod")
    if policy == POLICY_IF_NOT_SUCC and min_period is not None:
        errs.append(FieldError(FORBIDDEN, f"{path}.minPeriod",
                               f'minPeriod is not supported when policy is "{POLICY_IF_NOT_SUCC}"'))
    elif policy == POLICY_ALWAYS and min_period is not None:
        if parse_duration(min_period) < 30:
            errs.append(FieldError(INVALID, f"{path}.minPeriod",
                                   "minPeriod must be greater or equal to 30s", min_period))
    return errs


def _validate_driver_name(name: str, namespace: str, path: str) -> list[FieldError]:
    if namespace == NAMESPACE_SYSTEM:
        if not name.startswith(SYSTEM_DRIVER_PREFIX):
            return [FieldError(INVALID, path,
                               f'metadata.name must start with "{SYSTEM_DRIVER_PREFIX}" '
                               f'for drivers in namespace "{NAMESPACE_SYSTEM}"', name)]
        return []
    if name.startswith(SYSTEM_DRIVER_PREFIX):
        return [FieldError(INVALID, path,
                           f'metaname.name must not start with "{SYSTEM_DRIVER_PREFIX}" '
                           f'for drivers not in namespace "{NAMESPACE_SYSTEM}"', name)]
    return []


def _validate_driver_type(raw: str, path: str) -> list[FieldError]:
    if raw != WEBHOOK_DRIVER:
        return [FieldError(INVALID, path, f"driverType must be {WEBHOOK_DRIVER}", raw)]
    return []


def _url_error(raw: str) -> Optional[str]:
    prefix = f'parse "{raw}": '
    if any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in raw):
        return prefix + "net/url: invalid control character in URL"
    rest = raw.split("#", 1)[0]
    scheme = ""
    for i, ch in enumerate(rest):
        if ch.isascii() and ch.isalpha():
            continue
        if ch.isdigit() or ch in "+-.":
            if i == 0:
                break
            continue
        if ch == ":":
            if i == 0:
                return prefix + "missing protocol scheme"
            scheme, rest = rest[:i], rest[i + 1:]
        break
    rest = rest.split("?", 1)[0]
    if not scheme and not rest.startswith("/"):
        if ":" in rest.split("/", 1)[0]:
            return prefix + "first path segment in URL cannot contain colon"
    if rest.startswith("//"):
        host = rest[2:].split("/", 1)[0].rsplit("@", 1)[-1]
        if not host.startswith("[") and ":" in host:
            port = host.rsplit(":", 1)[1]
            if port and not port.isdigit():
                return prefix + f'invalid port ":{port}" after host'
    if re.search(r"%(?![0-9A-Fa-f]{2})", rest):
        return prefix + "invalid URL escape"
    return None


def _validate_driver_url(raw: str, path: str) -> list[FieldError]:
    err = _url_error(raw)
    return [FieldError(INVALID, path, err, raw)] if err else []


def _validate_driver_webhooks(raw: list, path: str) -> list[FieldError]:
    errs: list[FieldError] = []
    configured: dict[str, dict] = {}
    for wh in raw:
        name = wh.get("name", "")
        configured[name] = wh
        if name not in KNOWN_WEBHOOKS:
            errs.append(FieldError(NOT_SUPPORTED, f"{path}.{name}.name", bad_value=name,
                                   supported=list(KNOWN_WEBHOOKS)))
    if errs:
        return errs
    for known in KNOWN_WEBHOOKS:
        wh = configured.get(known)
        if wh is None:
            errs.append(FieldError(REQUIRED, f"{path}.{known}", f"webhook {known} must be configured"))
            continue
        timeout = wh.get("timeout")
        seconds = parse_duration(timeout)
        if seconds > 60:
            errs.append(FieldError(INVALID, f"{path}.{known}.timeout",
                                   f"webhook {known} invalid, timeout of must be less than or equal to 1m",
                                   timeout))
        elif seconds == 0:
            errs.append(FieldError(INVALID, f"{path}.{known}.timeout",
                                   f"webhook {known} invalid, timeout of must be specified", timeout))
    return errs


_ONLY_ONE = 'only one of "service, pods, static" is allowed'


def _validate_backends(spec: dict, path: str) -> list[FieldError]:
    service, pods, static = spec.get("service"), spec.get("pods"), spec.get("static")
    if service is not None:
        if pods is not None:
            return [FieldError(INVALID, f"{path}.pods", _ONLY_ONE, pods)]
        if static is not None:
            return [FieldError(INVALID, f"{path}.static", _ONLY_ONE, pods)]
        return _validate_service_backend(service, f"{path}.service")
    if pods is not None:
        if static is not None:
            return [FieldError(INVALID, f"{path}.static", _ONLY_ONE, pods)]
        return _validate_pod_backend(pods, f"{path}.pods")
    return []


def _validate_service_backend(raw: dict, path: str) -> list[FieldError]:
    return (_validate_port_selector(raw.get("port") or {}, f"{path}.port")
            + _validate_label_selector(raw.get("nodeSelector") or {}, f"{path}.nodeSelector"))


def _validate_pod_backend(raw: dict, path: str) -> list[FieldError]:
    errs = _validate_port_selector(raw.get("port") or {}, f"{path}.port")
    by_label, by_name = raw.get("byLabel"), raw.get("byName")
    if by_label is not None:
        if by_name is not None:
            errs.append(FieldError(INVALID, f"{path}.byName", 'only one of "byLabel, byName" is allowed', by_name))
        selector = by_label.get("selector") or {}
        if not selector:
            errs.append(FieldError(REQUIRED, f"{path}.byLabel.selector", "selector must be specified"))
        errs += _validate_label_selector(selector, f"{path}.byLabel.selector")
        return errs
    if by_name is None:
        errs.append(FieldError(REQUIRED, f"{path}.byLabel/byName", 'one of "byLabel, byName" must be specified'))
    return errs


def _validate_port_selector(raw: dict, path: str) -> list[FieldError]:
    errs: list[FieldError] = []
    number = raw.get("portNumber", 0) or 0
    if number <= 0 or number > 65535:
        errs.append(FieldError(INVALID, f"{path}.portNumber",
                               "portNumber must be greater than 0 and less than 65536", number))
    protocol = raw.get("protocol", "") or ""
    if protocol not in ("TCP", "UDP"):
        errs.append(FieldError(INVALID, f"{path}.protocol", 'protocol must be "TCP" or "UDP"', protocol))
    return errs


_QUALIFIED_NAME = re.compile(r"^([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9]$")
_DNS_SUBDOMAIN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")


def _label_problem(key: str, value: str) -> Optional[str]:
    parts = key.split("/")
    if len(parts) == 1:
        name = parts[0]
    elif len(parts) == 2:
        prefix, name = parts
        if not prefix:
            return "prefix part must be non-empty"
        if len(prefix) > 253 or not _DNS_SUBDOMAIN.match(prefix):
            return "prefix part must be a valid DNS subdomain"
    else:
        return "a qualified name must consist of alphanumeric characters and at most one '/'"
    if not name or len(name) > 63 or not _QUALIFIED_NAME.match(name):
        return "name part must be a valid qualified name"
    if value and (len(value) > 63 or not _QUALIFIED_NAME.match(value)):
        return "a valid label value must be 63 characters or less and be alphanumeric"
    return None


def _validate_label_selector(raw: dict, path: str) -> list[FieldError]:
    errs: list[FieldError] = []
    for key, value in raw.items():
        problem = _label_problem(key, value)
        if problem:
            errs.append(FieldError(INVALID, path, f"invalid label: {problem}", f"{key}:{value}"))
    return errs