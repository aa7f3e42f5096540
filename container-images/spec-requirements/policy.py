"""Admission policy for resources created or updated by human cluster users.

Two requirements are enforced:

- the resource has a contact label (the key is not case-sensitive);
- if the resource is a pod, or will create pods (e.g. a Deployment or a
  Job), every container has cpu and memory resource requests.

The contact label of a resource that owns a pod template is also copied into
that template, so pods created from it carry the label too.

Resources are read structurally. They can be the JSON objects delivered in an
AdmissionReview or `kubernetes.client` model objects; both are accessed by
their API field names ("initContainers", not "init_containers").
"""

import logging
from collections.abc import Mapping
from typing import Any

from kubernetes import client
from pydantic import BaseModel
from typing_extensions import Protocol, override

from models import Operation

LOG = logging.getLogger(__name__)

CONTACT_LABEL = "contact"
REQUIRED_RESOURCES = ("cpu", "memory")
HANDLED_OPERATIONS = (Operation.CREATE, Operation.UPDATE)

MISSING_CONTACT = (
    "Cannot {op} this resource. It does not have a valid contact label. "
    "Please add one and try again."
)
MISSING_REQUESTS = (
    "Cannot {op} this resource. Some containers do not have resource requests "
    "specified. Please add resource requests to every container in the pod spec "
    "and try again."
)


class Request(BaseModel):
    operation: Operation
    actor_name: str
    actor_groups: list[str] = []
    resource_kind: str
    # Passed through as-is; label propagation writes into this object.
    resource: Any = None


class Decision(BaseModel):
    allowed: bool
    reason: str | None = None
    # True if the contact label was written into the resource's pod template.
    # This can happen on a denied request as well.
    propagated: bool = False


def _is_structured(value) -> bool:
    return isinstance(value, Mapping) or hasattr(value, "attribute_map")


def _attribute_name(obj, key: str) -> str:
    # kubernetes client models map python attribute names to API field names
    # in their `attribute_map`.
    for attr, field_name in obj.attribute_map.items():
        if field_name == key:
            return attr
    return key


def get_field(obj, key: str, default=None):
    """Return field `key` of a JSON object or kubernetes client model.

    Returns `default` if the field is missing, is None, or `obj` is not a
    structured value at all.
    """
    if isinstance(obj, Mapping):
        value = obj.get(key)
    elif hasattr(obj, "attribute_map"):
        value = getattr(obj, _attribute_name(obj, key), None)
    else:
        return default

    return default if value is None else value


def set_field(obj, key: str, value):
    if isinstance(obj, Mapping):
        obj[key] = value
    else:
        setattr(obj, _attribute_name(obj, key), value)


def get_contact(resource) -> str:
    """Return the value of the contact label of the given resource, or an
    empty string if there is none.

    If several labels match the key case-insensitively, which one is used
    depends on the iteration order of the labels.
    """
    labels = get_field(get_field(resource, "metadata"), "labels", {})
    for key, value in labels.items():
        if key.lower() == CONTACT_LABEL:
            return value
    return ""


def _is_pod_template(template) -> bool:
    """A pod template has a pod spec with a list of containers. Templates of
    other shapes (e.g. the secret template of a SealedSecret) do not count."""
    if not _is_structured(template):
        return False

    metadata = get_field(template, "metadata")
    if metadata is not None and not _is_structured(metadata):
        return False

    spec = get_field(template, "spec")
    if not _is_structured(spec):
        return False

    if not isinstance(get_field(spec, "containers"), (list, tuple)):
        return False
    if not isinstance(get_field(spec, "initContainers", []), (list, tuple)):
        return False

    return True


def get_pod_template(resource) -> tuple[Any, bool]:
    """Return the pod template embedded in the given resource and True, or an
    empty template and False if the resource does not have one.

    Any kind with a pod template at `spec.template` qualifies, so this covers
    Deployments, Jobs, ReplicaSets, StatefulSets, DaemonSets and kinds that
    do not exist yet. The returned template is the object nested in
    `resource`, not a copy.
    """
    template = get_field(get_field(resource, "spec"), "template")
    if not _is_pod_template(template):
        return {}, False

    return template, True


def get_containers(obj) -> list:
    """Return the init containers followed by the regular containers of the
    pod spec at `obj.spec`. Works for pods and for pod templates."""
    spec = get_field(obj, "spec")
    return [*get_field(spec, "initContainers", []), *get_field(spec, "containers", [])]


def has_resource_requests(containers) -> bool:
    """Return True if every container requests both cpu and memory."""
    for container in containers:
        requests = get_field(get_field(container, "resources"), "requests", {})
        missing = [name for name in REQUIRED_RESOURCES if name not in requests]
        if missing:
            LOG.debug(
                "container %s has no request for %s",
                get_field(container, "name"),
                ", ".join(missing),
            )
            return False

    return True


def propagate_label(template, key: str, value: str):
    """Set label `key` to `value` on the given pod template, leaving any other
    labels in place."""
    metadata = get_field(template, "metadata")
    if metadata is None:
        metadata = {} if isinstance(template, Mapping) else client.V1ObjectMeta()
        set_field(template, "metadata", metadata)

    labels = get_field(metadata, "labels")
    if labels is None:
        labels = {}
        set_field(metadata, "labels", labels)

    labels[key] = value


class ActorClassifier(Protocol):
    def is_human(self, request: Request) -> bool: ...


class NameSubstringClassifier(ActorClassifier):
    """Treat an actor as human if its name contains `substring`.

    With the default this matches "admin" and also e.g. "sysadmin-bot", and
    it does not match human users with other names. Use GroupClassifier where
    the API server reports meaningful groups.
    """

    def __init__(self, substring: str = "admin"):
        self.substring = substring

    @override
    def is_human(self, request):
        return self.substring in request.actor_name


class GroupClassifier(ActorClassifier):
    """Treat an actor as human if it belongs to one of `groups`."""

    def __init__(self, groups):
        self.groups = frozenset(groups)

    @override
    def is_human(self, request):
        return any(group in self.groups for group in request.actor_groups)


class SpecRequirements:
    def __init__(self, classifier: ActorClassifier | None = None):
        self.classifier = classifier or NameSubstringClassifier()

    def decide(self, request: Request) -> Decision:
        """Decide whether `request` may proceed.

        A denial is returned as a Decision, it is never raised. When the
        resource has a pod template, the contact label is written into that
        template in place before resource requests are checked, so
        `request.resource` may have been modified even if the request is
        denied (see `Decision.propagated`).
        """
        if request.operation not in HANDLED_OPERATIONS:
            return Decision(allowed=True)

        if not self.classifier.is_human(request):
            LOG.debug("not checking %s by %s", request.resource_kind, request.actor_name)
            return Decision(allowed=True)

        op = request.operation.lower()

        contact = get_contact(request.resource)
        if not contact:
            return self._deny(request, MISSING_CONTACT.format(op=op))

        template, has_template = get_pod_template(request.resource)
        if has_template:
            propagate_label(template, CONTACT_LABEL, contact)

        # Only resources that are or contain pods need resource requests.
        if request.resource_kind != "Pod" and not has_template:
            LOG.info("allowing %s %s by %s", op, request.resource_kind, request.actor_name)
            return Decision(allowed=True)

        if request.resource_kind == "Pod":
            containers = get_containers(request.resource)
        else:
            containers = get_containers(template)

        if not has_resource_requests(containers):
            return self._deny(
                request, MISSING_REQUESTS.format(op=op), propagated=has_template
            )

        LOG.info("allowing %s %s by %s", op, request.resource_kind, request.actor_name)
        return Decision(allowed=True, propagated=has_template)

    def _deny(self, request, reason, propagated=False):
        LOG.warning(
            "denying %s %s by %s: %s",
            request.operation.lower(),
            request.resource_kind,
            request.actor_name,
            reason,
        )
        return Decision(allowed=False, reason=reason, propagated=propagated)
