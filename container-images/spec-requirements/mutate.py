import logging
import pydantic

from flask import Flask, request, jsonify, current_app

from models import (
    BaseModel,
    AdmissionReview,
    AdmissionResponse,
    AdmissionReviewStatus,
    Patch,
    PatchAction,
    PatchOp,
    PatchType,
)

from policy import (
    GroupClassifier,
    NameSubstringClassifier,
    HANDLED_OPERATIONS,
    Request,
    SpecRequirements,
    get_field,
    get_pod_template,
)
from exc import ApplicationError, InvalidRequestError

LOG = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)

# Where get_pod_template finds the pod template in a resource.
TEMPLATE_PATH = ("spec", "template")


class DEFAULTS:
    ACTOR_MATCH = "admin"
    HUMAN_GROUPS = None


def jsonresponse():
    """Transforms the response from a view function into a JSON object."""

    def _outer(func):
        def _inner(*args, **kwargs):
            res = func(*args, **kwargs)
            if isinstance(res, BaseModel):
                return jsonify(res.model_dump(exclude_none=True))
            else:
                return jsonify(res)

        return _inner

    return _outer


def json_patch_escape(val):
    return val.replace("~", "~0").replace("/", "~1")


def json_patch_path(*segments):
    return "".join(f"/{json_patch_escape(segment)}" for segment in segments)


def contact_label_patch(obj):
    """Generate a JSON Patch that replaces the pod template metadata of `obj`
    with its current (propagated) value."""
    template, _ = get_pod_template(obj)
    return Patch(
        [
            PatchAction(
                op=PatchOp.ADD,
                path=json_patch_path(*TEMPLATE_PATH, "metadata"),
                value=get_field(template, "metadata", {}),
            )
        ]
    )


@jsonresponse()
def admit():
    body = AdmissionReview.model_validate(request.get_json())
    if body.request is None:
        raise InvalidRequestError("admission review does not contain a request")

    req = body.request
    if req.operation in HANDLED_OPERATIONS and req.object is None:
        raise InvalidRequestError(f"{req.operation} request has no object")

    decision = current_app.engine.decide(
        Request(
            operation=req.operation,
            actor_name=req.userInfo.username,
            actor_groups=req.userInfo.groups,
            resource_kind=req.object_kind,
            resource=req.object,
        )
    )

    if not decision.allowed:
        return AdmissionReview(
            response=AdmissionResponse(
                allowed=False,
                uid=req.uid,
                status=AdmissionReviewStatus(code=403, message=decision.reason),
            )
        )

    # If the contact label was not propagated there is nothing to patch
    if not decision.propagated:
        return AdmissionReview(response=AdmissionResponse(allowed=True, uid=req.uid))

    LOG.info("propagating contact label to pod template of %s", req.name)
    return AdmissionReview(
        response=AdmissionResponse(
            uid=req.uid,
            allowed=True,
            patchType=PatchType.JSONPatch,
            patch=contact_label_patch(req.object),
        )
    )


def handle_validationerror(err):
    return str(err), 400, {"content-type": "text/plain"}


def handle_invalidrequesterror(err):
    return str(err), 400, {"content-type": "text/plain"}


def handle_applicationerror(err):
    return str(err), 500, {"content-type": "text/plain"}


def health():
    return "OK", 200, {"content-type": "text/plain"}


def create_app(**config) -> Flask:
    """Use an application factory [1] to create the Flask app.

    Configuration comes from DEFAULTS, then from SPECREQ_* environment
    variables, then from keyword arguments.

    [1]: https://flask.palletsprojects.com/en/3.0.x/patterns/appfactories/
    """

    app = Flask(__name__)
    app.config.from_object(DEFAULTS)
    app.config.from_prefixed_env("SPECREQ")
    if config:
        app.config.update(config)

    # from_prefixed_env decodes values as JSON, so e.g. "1001" arrives as an int
    if app.config.get("HUMAN_GROUPS"):
        human_groups = str(app.config["HUMAN_GROUPS"])
        groups = [g.strip() for g in human_groups.split(",") if g.strip()]
        classifier = GroupClassifier(groups)
    elif app.config.get("ACTOR_MATCH"):
        classifier = NameSubstringClassifier(str(app.config["ACTOR_MATCH"]))
    else:
        LOG.error("Missing ACTOR_MATCH or HUMAN_GROUPS configuration")
        exit(1)

    app.engine = SpecRequirements(classifier)

    app.errorhandler(pydantic.ValidationError)(handle_validationerror)
    app.errorhandler(InvalidRequestError)(handle_invalidrequesterror)
    app.errorhandler(ApplicationError)(handle_applicationerror)
    app.add_url_rule("/healthz", view_func=health)
    app.add_url_rule("/mutate", view_func=admit, methods=["POST"])

    return app
