import base64

import pydantic
import pytest

from models import AdmissionRequest, AdmissionResponse, Patch, PatchAction


PATCH = Patch([PatchAction(op="add", path="/metadata/labels/contact", value="hodor")])


def test_patch_is_encoded():
    res = AdmissionResponse(uid="1234", allowed=True, patchType="JSONPatch", patch=PATCH)
    assert Patch.model_validate_json(base64.b64decode(res.patch)) == PATCH


def test_patch_requires_patch_type():
    with pytest.raises(pydantic.ValidationError):
        AdmissionResponse(uid="1234", allowed=True, patch=PATCH)


def test_patch_type_requires_patch():
    with pytest.raises(pydantic.ValidationError):
        AdmissionResponse(uid="1234", allowed=True, patchType="JSONPatch")


def test_patch_must_be_valid():
    with pytest.raises(pydantic.ValidationError):
        AdmissionResponse(
            uid="1234",
            allowed=True,
            patchType="JSONPatch",
            patch=base64.b64encode(b'[{"op": "frobnicate"}]'),
        )


def test_object_kind():
    assert AdmissionRequest(uid="1", kind={"kind": "Job"}).object_kind == "Job"
    assert AdmissionRequest(uid="1", object={"kind": "Pod"}).object_kind == "Pod"
    assert AdmissionRequest(uid="1").object_kind == ""
