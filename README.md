# lbadmission

Admission webhooks for three custom resources: load balancers, load balancer
drivers and backend groups. Objects are handled as plain dicts decoded from
JSON. The package does two jobs.

* **Validation** rejects malformed objects. It also rejects updates that change
  fields which may not change:
  * a driver's `url` or `driverType`;
  * a load balancer's `lbDriver` or `lbSpec`;
  * a backend group's `lbName` or backend type.
* **Mutation** returns JSON patches that fill in defaults:
  * load balancers get the deletion finalizer;
  * drivers get every known webhook that is missing, with a `10s` timeout;
  * backend groups get the `lbcf.tkestack.io/lb-name` label and the default
    `TCP` port protocol.

It needs nothing beyond the Python standard library, version 3.10 or later.

## Installation

```
pip install .
```

## Running the webhook server

```
lbadmission-server --tls-cert-file server.crt --tls-key-file server.key
```

Options:

| Option | Meaning |
| --- | --- |
| `--tls-cert-file` | Certificate file. Required. |
| `--tls-key-file` | Key file. Required. |
| `--host` | Address to bind. Default: all interfaces. |
| `--port` | Port to listen on. Default: `443`. |
| `--snapshot` | JSON file with `loadBalancers`, `loadBalancerDrivers` and `backendRecords` lists. |

The server serves HTTPS and accepts `AdmissionReview` documents by `POST`. It
has these routes:

* `/mutate-load-balancer`
* `/mutate-load-balancer-driver`
* `/mutate-backend-broup`
* `/validate-load-balancer`
* `/validate-load-balancer-driver`
* `/validate-backend-group`

The server answers as follows:

* An unknown path gets a 404.
* A request with a content type other than `application/json` gets a 415.
* A `GET` gets a 405.
* A body that cannot be decoded gets a denying response. Its message starts
  with `decode AdmissionReview failed:`.

To validate a load balancer or backend group, the server calls the driver's own
`validateLoadBalancer` or `validateBackend` webhook. It posts JSON to the
driver's `url` followed by `/` and the webhook name. The timeout is the one
configured for that webhook, or 10 seconds if none is set.

### What the server does not do

The server does not connect to or watch a cluster API. It looks up existing
load balancers, drivers and backend records only in the snapshot file it
reads at start-up. That snapshot never changes while the server runs. If no
snapshot is given, every list is empty:

* creating a load balancer or backend group is denied, because the driver
  cannot be found;
* deleting a driver is allowed.

## Using the pieces directly

### Validation

`lbadmission.validate` has these validators:

* `validate_load_balancer_driver`
* `validate_load_balancer`
* `validate_backend_group`

Each returns a list of `FieldError`. An empty list means the object is valid.
`aggregate` joins the errors into one message.

The same module also has:

* the update checks `driver_updated_fields_allowed`, `lb_updated_fields_allowed`
  and `backend_group_update_fields_allowed`. Each returns `(allowed, message)`.
* `get_backend_type`;
* `parse_duration`, which turns strings such as `"1m30s"` into seconds.

```python
from lbadmission.validate import aggregate, validate_backend_group

group = {"spec": {"lbName": "my-lb", "pods": {"port": {"portNumber": 0, "protocol": "TCP"},
                                               "byName": ["pod-0"]}}}
errors = validate_backend_group(group)
if errors:
    print(aggregate(errors))
```

### Mutation

`lbadmission.mutate` builds `Patch` objects with these functions:

* `add_label`
* `add_finalizer`
* `default_svc_protocol`
* `default_pod_protocol`
* `backend_group_patches`
* `driver_patches`

`encode_patches` turns patches into a compact JSON patch document. An empty
list encodes as `null`.

```python
from lbadmission.mutate import backend_group_patches, encode_patches

document = encode_patches(backend_group_patches(group))
```

### Admission reviews

`lbadmission.review` holds the admission data types: `AdmissionReview`,
`AdmissionRequest`, `AdmissionResponse` and `Operation`. It also holds these
functions:

* `to_admission_response` allows when given `None`, and otherwise denies with
  the error's message.
* `validate` dispatches on `CREATE`, `UPDATE` or `DELETE`, and allows any
  other operation.
* `mutate` runs a mutating admit function.

Both `validate` and `mutate` copy the request UID onto the response.

### The admitter

`lbadmission.admitter.Admitter` joins validation, mutation and lookups of
existing objects. It is built from four collaborators:

* A lister for load balancers, one for drivers and one for backend records.
  Each lister has `get(namespace, name)`, which returns a dict, and `list()`.
  A lister raises `NotFoundError` for missing objects.
* An invoker with `call_validate_load_balancer(driver, request)` and
  `call_validate_backend(driver, request)`. Each returns a dict with `succ` and
  `msg`.

The module also has two helpers:

* `get_driver_namespace` maps driver names that start with `lbcf-` to
  `kube-system`.
* `is_driver_draining` checks the `lbcf.tkestack.io/driver-draining` label.

### The server class

`lbadmission.server.WebhookServer` takes an admitter and the TLS file names. It
has two methods:

* `handle(path, body)` answers one review and returns the response as a dict.
* `serve(host, port)` runs the HTTPS server.

## Tests

```
pip install .[test]
pytest
```