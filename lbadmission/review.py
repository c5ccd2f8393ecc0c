"""Admission review objects and the dispatch of requests to admit functions."""

from __future__ import annotations

import base64
import enum
import json
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

API_VERSION = "admission.k8s.io/v1beta1"
KIND = "AdmissionReview"
PATCH_TYPE_JSON_PATCH = "JSONPatch"


class Operation(str, enum.Enum):
    """Operations an admission request can carry."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CONNECT = "CONNECT"


def _to_raw(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode()
    return json.dumps(value).encode()


@dataclass
class AdmissionRequest:
    """The request part of an admission review; objects are raw JSON bytes."""

    uid: str = ""
    operation: Union[Operation, str] = ""
    name: str = ""
    namespace: str = ""
    object: bytes = b""
    old_object: bytes = b""

    @classmethod
    def from_dict(cls, data: dict) -> "AdmissionRequest":
        op = data.get("operation", "")
        try:
            op = Operation(op)
        except ValueError:
            pass
        return cls(
            uid=data.get("uid", ""),
            operation=op,
            name=data.get("name", ""),
            namespace=data.get("namespace", ""),
            object=_to_raw(data.get("object")),
            old_object=_to_raw(data.get("oldObject")),
        )


@dataclass
class AdmissionResponse:
    """The verdict returned for an admission request."""

    allowed: bool = False
    uid: str = ""
    message: Optional[str] = None
    patch: Optional[bytes] = None
    patch_type: Optional[str] = None

    def to_dict(self) -> dict:
        out: dict = {"uid": self.uid, "allowed": self.allowed}
        if self.message is not None:
            out["status"] = {"message": self.message}
        if self.patch is not None:
            out["patch"] = base64.b64encode(self.patch).decode()
        if self.patch_type is not None:
            out["patchType"] = self.patch_type
        return out


@dataclass
class AdmissionReview:
    """An admission review holding a request, a response, or both."""

    request: Optional[AdmissionRequest] = None
    response: Optional[AdmissionResponse] = None

    @classmethod
    def from_dict(cls, data: dict) -> "AdmissionReview":
        if not isinstance(data, dict):
            raise ValueError("AdmissionReview must be a JSON object")
        req = data.get("request")
        return cls(request=AdmissionRequest.from_dict(req) if req is not None else None)

    def to_dict(self) -> dict:
        out: dict = {"apiVersion": API_VERSION, "kind": KIND}
        if self.response is not None:
            out["response"] = self.response.to_dict()
        return out


AdmitFunc = Callable[[AdmissionReview], AdmissionResponse]


def to_admission_response(error: Optional[BaseException | str]) -> AdmissionResponse:
    """Allow when there is no error, otherwise deny with the error's message."""
    if error is None:
        return AdmissionResponse(allowed=True)
    return AdmissionResponse(allowed=False, message=str(error))


def validate(
    review: AdmissionReview,
    create_func: AdmitFunc,
    update_func: AdmitFunc,
    delete_func: AdmitFunc,
) -> AdmissionReview:
    """Dispatch a validating review by operation; other operations are allowed."""
    handlers = {
        Operation.CREATE: create_func,
        Operation.UPDATE: update_func,
        Operation.DELETE: delete_func,
    }
    handler = handlers.get(review.request.operation)
    response = handler(review) if handler else to_admission_response(None)
    response.uid = review.request.uid
    return AdmissionReview(response=response)


def mutate(review: AdmissionReview, mutate_func: AdmitFunc) -> AdmissionReview:
    """Run a mutating admit function and stamp the request's UID on the answer."""
    response = mutate_func(review)
    response.uid = review.request.uid
    return AdmissionReview(response=response)