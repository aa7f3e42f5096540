import pytest

import mutate


@pytest.fixture()
def app():
    app = mutate.create_app(TESTING=True)
    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def both_requests():
    return {"requests": {"cpu": "100m", "memory": "200Mi"}}


@pytest.fixture()
def deployment():
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": "deployment", "labels": {"contact": "hodor"}},
        "spec": {
            "selector": {"matchLabels": {"app": "doorholding"}},
            "template": {
                "metadata": {"labels": {"app": "doorholding"}},
                "spec": {
                    "containers": [
                        {"name": "deploymentcontainer1", "image": "deploymentimage"},
                    ]
                },
            },
        },
    }
