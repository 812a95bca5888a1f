# -*- coding: utf-8 -*-

"""
Unit tests for the request gate (gate.py).

Covers the middleware factory over all five sources, failure short-circuit,
error handler replacement, configuration errors and the FastAPI dependency.
"""

import pytest
from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.testclient import TestClient
from pydantic import AliasPath, BaseModel, Field

from reqgate import (
    ConfigurationError,
    PropagationError,
    PydanticRuleEngine,
    RequestGate,
    Source,
    StructuralDecoder,
    ValidationFailure,
    default_gate,
    install_exception_handlers,
    json_error_handler,
    register_rule,
    set_error_handler,
    set_rule_engine,
    validate,
    validated,
)
from tests.schemas import Account, Search, UserParams


VALID_ACCOUNT_XML = (
    "<account><id>123</id><verified>true</verified>"
    "<profile><name>John</name><email>john@example.com</email></profile>"
    "<follow_ids>1</follow_ids><follow_ids>2</follow_ids></account>"
)


def account_handler(source):
    """Handler echoing the validated Account for a source."""
    async def handler(request):
        data = validated(request, source, Account)
        return JSONResponse(data.model_dump())
    return handler


def search_handler(source):
    async def handler(request):
        data = validated(request, source, Search)
        return JSONResponse({"tags": data.tags, "page": data.page, "q": data.q})
    return handler


def never_called(request):
    raise AssertionError("handler must not run after a rejected request")


# =============================================================================
# Route parameters
# =============================================================================

class TestParamsSource:
    """Tests for Source.PARAMS."""

    def test_valid_id(self, app):
        """
        What it does: GET /users/123 decodes {id: 123} and calls the handler.
        Purpose: Route parameters round-trip into the handler.
        """
        async def handler(request):
            params = validated(request, Source.PARAMS, UserParams)
            return JSONResponse({"id": params.id})

        app.add_route("/users/{id}", validate(UserParams, Source.PARAMS)(handler), methods=["GET"])

        print("Action: GET /users/123...")
        response = TestClient(app).get("/users/123")

        print(f"Response: {response.status_code} {response.text}")
        assert response.status_code == 200
        assert response.json() == {"id": 123}

    def test_non_integer_id_is_400(self, app):
        """
        What it does: GET /users/abc is rejected before the handler.
        Purpose: Type errors short-circuit with a client error.
        """
        app.add_route("/users/{id}", validate(UserParams, Source.PARAMS)(never_called), methods=["GET"])

        response = TestClient(app).get("/users/abc")

        print(f"Response: {response.status_code} {response.text}")
        assert response.status_code == 400
        assert response.text.startswith("id: ")

    def test_constraint_violation_is_400(self, app):
        """
        What it does: GET /users/0 violates gt=0.
        Purpose: Validation failures short-circuit too.
        """
        app.add_route("/users/{id}", validate(UserParams, Source.PARAMS)(never_called), methods=["GET"])

        response = TestClient(app).get("/users/0")

        assert response.status_code == 400
        assert "greater than 0" in response.text


# =============================================================================
# Query string
# =============================================================================

class TestQuerySource:
    """Tests for Source.QUERY."""

    def test_repeated_keys_reach_handler(self, app):
        """
        What it does: Verifies ?tag=a&tag=b reaches the handler as ["a", "b"].
        Purpose: Multi-valued query keys are preserved in order.
        """
        app.add_route("/search", validate(Search, Source.QUERY)(search_handler(Source.QUERY)))

        response = TestClient(app).get("/search?tag=a&tag=b&page=2&q=books")

        assert response.status_code == 200
        assert response.json() == {"tags": ["a", "b"], "page": 2, "q": "books"}

    def test_missing_required_is_400(self, app):
        """
        What it does: Verifies a missing required query field is rejected.
        Purpose: Required constraint applies to query input.
        """
        app.add_route("/search", validate(Search, Source.QUERY)(never_called))

        response = TestClient(app).get("/search?tag=a")

        assert response.status_code == 400
        assert "q: Field required" in response.text

    def test_undecodable_escape_is_400(self, app):
        """
        What it does: Verifies an escape that is not valid UTF-8 is rejected.
        Purpose: Malformed URL-encoded data is a decode failure.
        """
        app.add_route("/search", validate(Search, Source.QUERY)(never_called))

        response = TestClient(app).get("/search?q=%ff")

        assert response.status_code == 400
        assert "malformed query data" in response.text


# =============================================================================
# Form body
# =============================================================================

class TestFormSource:
    """Tests for Source.FORM."""

    def test_repeated_keys_reach_handler(self, app):
        """
        What it does: Verifies a urlencoded body with repeated keys.
        Purpose: Form bodies follow the query-string multi-value rules.
        """
        app.add_route(
            "/search", validate(Search, Source.FORM)(search_handler(Source.FORM)), methods=["POST"]
        )

        response = TestClient(app).post(
            "/search",
            content="tag=x&tag=y&tag=z&q=hello+world",
            headers={"content-type": "application/x-www-form-urlencoded"},
        )

        assert response.status_code == 200
        assert response.json() == {"tags": ["x", "y", "z"], "page": 1, "q": "hello world"}

    def test_bad_type_is_400(self, app):
        """
        What it does: Verifies page=two is rejected.
        Purpose: Type errors in form bodies are decode failures.
        """
        app.add_route("/search", validate(Search, Source.FORM)(never_called), methods=["POST"])

        response = TestClient(app).post(
            "/search",
            content="q=x&page=two",
            headers={"content-type": "application/x-www-form-urlencoded"},
        )

        assert response.status_code == 400
        assert response.text.startswith("page: ")


# =============================================================================
# JSON body
# =============================================================================

class TestJsonSource:
    """Tests for Source.JSON."""

    def test_nested_document(self, app):
        """
        What it does: Verifies a nested JSON document decodes into nested models.
        Purpose: Round-trip fidelity for JSON bodies.
        """
        app.add_route("/accounts", validate(Account, Source.JSON)(account_handler(Source.JSON)), methods=["POST"])
        body = {
            "id": 123,
            "profile": {"name": "John", "email": "john@example.com"},
            "verified": True,
            "follow_ids": [1, 2, 3],
        }

        response = TestClient(app).post("/accounts", json=body)

        print(f"Response: {response.status_code} {response.text}")
        assert response.status_code == 200
        assert response.json() == body

    def test_invalid_nested_email_is_400(self, app):
        """
        What it does: Verifies an invalid nested email is rejected.
        Purpose: Nested format constraints are enforced.
        """
        app.add_route("/accounts", validate(Account, Source.JSON)(never_called), methods=["POST"])

        response = TestClient(app).post(
            "/accounts",
            json={"id": 123, "profile": {"name": "John", "email": "not-an-email"}},
        )

        assert response.status_code == 400
        assert response.text.startswith("profile.email: ")

    def test_malformed_json_is_400(self, app):
        """
        What it does: Verifies a syntax error in the body is rejected.
        Purpose: Malformed documents are decode failures.
        """
        app.add_route("/accounts", validate(Account, Source.JSON)(never_called), methods=["POST"])

        response = TestClient(app).post(
            "/accounts", content="{not json", headers={"content-type": "application/json"}
        )

        assert response.status_code == 400
        assert "malformed JSON body" in response.text


# =============================================================================
# XML body
# =============================================================================

class TestXmlSource:
    """Tests for Source.XML."""

    def test_nested_document_with_repeated_elements(self, app):
        """
        What it does: Verifies XML with nested and repeated elements decodes fully.
        Purpose: Repeated siblings become a list without losing the first one.
        """
        app.add_route("/accounts", validate(Account, Source.XML)(account_handler(Source.XML)), methods=["POST"])

        response = TestClient(app).post(
            "/accounts", content=VALID_ACCOUNT_XML, headers={"content-type": "application/xml"}
        )

        print(f"Response: {response.status_code} {response.text}")
        assert response.status_code == 200
        assert response.json() == {
            "id": 123,
            "profile": {"name": "John", "email": "john@example.com"},
            "verified": True,
            "follow_ids": [1, 2],
        }

    def test_missing_required_is_400(self, app):
        """
        What it does: Verifies a document without the required profile is rejected.
        Purpose: Required constraint applies to XML input.
        """
        app.add_route("/accounts", validate(Account, Source.XML)(never_called), methods=["POST"])

        response = TestClient(app).post(
            "/accounts", content="<account><id>1</id></account>", headers={"content-type": "application/xml"}
        )

        assert response.status_code == 400
        assert "profile: Field required" in response.text

    def test_malformed_xml_is_400(self, app):
        """
        What it does: Verifies an unclosed element is rejected.
        Purpose: Malformed documents are decode failures.
        """
        app.add_route("/accounts", validate(Account, Source.XML)(never_called), methods=["POST"])

        response = TestClient(app).post(
            "/accounts", content="<account><id>1</account>", headers={"content-type": "application/xml"}
        )

        assert response.status_code == 400
        assert "malformed XML body" in response.text


# =============================================================================
# Configuration errors
# =============================================================================

class TestConfigurationErrors:
    """Tests for wiring mistakes."""

    def test_unknown_source_fails_loudly(self, app):
        """
        What it does: Verifies an unknown source raises when the middleware runs.
        Purpose: Misconfiguration must not degrade into a 200 or a 400.
        """
        app.add_route("/users/{id}", validate(UserParams, "path")(never_called), methods=["GET"])

        print("Action: GET with misconfigured gate...")
        with pytest.raises(ConfigurationError):
            TestClient(app).get("/users/1")

    def test_unknown_source_is_500_without_reraise(self, app):
        """
        What it does: Verifies the server answers 500 (not 400) for an unknown source.
        Purpose: The failure never goes through the error handler.
        """
        calls = []
        set_error_handler(lambda failure: calls.append(failure) or PlainTextResponse("x", status_code=400))
        app.add_route("/users/{id}", validate(UserParams, "path")(never_called), methods=["GET"])

        response = TestClient(app, raise_server_exceptions=False).get("/users/1")

        assert response.status_code == 500
        assert calls == []

    def test_non_model_schema_rejected_at_registration(self):
        """
        What it does: Verifies a schema that is not a pydantic model is refused.
        Purpose: Catch wiring errors when routes are declared.
        """
        with pytest.raises(ConfigurationError):
            validate(dict, Source.QUERY)

    def test_path_alias_rejected_at_registration(self):
        """
        What it does: Verifies a schema with an AliasPath field is refused by validate().
        Purpose: Fields the decoder cannot address fail when routes are declared.
        """
        class Located(BaseModel):
            city: str = Field(validation_alias=AliasPath("address", "city"))

        with pytest.raises(ConfigurationError):
            validate(Located, Source.JSON)

        with pytest.raises(ConfigurationError):
            RequestGate().dependency(Located, Source.JSON)

    def test_schema_instance_is_accepted(self, app):
        """
        What it does: Verifies a model instance works like its class.
        Purpose: validate(Schema(...), source) and validate(Schema, source) are equivalent.
        """
        async def handler(request):
            return JSONResponse({"id": validated(request, Source.PARAMS, UserParams).id})

        app.add_route("/users/{id}", validate(UserParams(id=1), Source.PARAMS)(handler), methods=["GET"])

        assert TestClient(app).get("/users/9").json() == {"id": 9}

    def test_handler_reading_wrong_source_fails(self, app):
        """
        What it does: Verifies a handler reading a source it was not gated on fails.
        Purpose: Retrieval mismatches are programming errors.
        """
        async def handler(request):
            validated(request, Source.JSON)
            return PlainTextResponse("unreachable")

        app.add_route("/users/{id}", validate(UserParams, Source.PARAMS)(handler), methods=["GET"])

        with pytest.raises(PropagationError):
            TestClient(app).get("/users/1")


# =============================================================================
# Error handler and rule engine configuration
# =============================================================================

class TestErrorPolicyConfiguration:
    """Tests for error handler replacement."""

    def test_replaced_handler_is_used(self, app):
        """
        What it does: Verifies set_error_handler() changes the response of a later failure.
        Purpose: The configured policy, not the default, handles failures.
        """
        endpoint = validate(UserParams, Source.PARAMS)(never_called)
        app.add_route("/users/{id}", endpoint, methods=["GET"])
        client = TestClient(app)
        seen = []

        def teapot(failure):
            seen.append(failure)
            return PlainTextResponse(f"teapot: {failure.origin.value}", status_code=418)

        print("Action: Replacing error handler after registration...")
        set_error_handler(teapot)
        response = client.get("/users/abc")

        assert response.status_code == 418
        assert response.text == "teapot: decode"
        assert len(seen) == 1
        assert seen[0].source == Source.PARAMS

    def test_handler_sees_both_origins(self, app):
        """
        What it does: Verifies decode and validation failures both reach the handler.
        Purpose: One policy for every failure.
        """
        set_error_handler(json_error_handler)
        app.add_route("/users/{id}", validate(UserParams, Source.PARAMS)(never_called), methods=["GET"])
        client = TestClient(app)

        decode_response = client.get("/users/abc")
        validation_response = client.get("/users/0")

        assert decode_response.json()["origin"] == "decode"
        assert validation_response.json()["origin"] == "validation"
        assert validation_response.json()["errors"][0]["loc"] == "id"

    def test_custom_rules_on_default_gate(self, app):
        """
        What it does: Verifies register_rule() affects validations through validate().
        Purpose: Custom rules are registered once, during startup.
        """
        from typing import Annotated
        from pydantic import BaseModel
        from reqgate import Rule

        class Slug(BaseModel):
            slug: Annotated[str, Rule("lowercase")]

        register_rule("lowercase", lambda value: value == value.lower())
        app.add_route("/pages/{slug}", validate(Slug, Source.PARAMS)(lambda request: PlainTextResponse("ok")))
        client = TestClient(app)

        assert client.get("/pages/about").status_code == 200
        rejected = client.get("/pages/About")
        assert rejected.status_code == 400
        assert "lowercase" in rejected.text

    def test_register_rule_without_support_is_configuration_error(self):
        """
        What it does: Verifies register_rule() needs an engine with named rules.
        Purpose: Replacing the engine with a minimal one is detected.
        """
        class PassThrough:
            def validate(self, instance):
                return instance

        set_rule_engine(PassThrough())

        with pytest.raises(ConfigurationError):
            register_rule("x", lambda value: True)


# =============================================================================
# Gate instances, composition and dependencies
# =============================================================================

class TestRequestGateInstances:
    """Tests for independent gates and composition."""

    def test_builder_gate_is_independent_of_default(self, app):
        """
        What it does: Verifies a gate built with with_error_handler() ignores the global setter.
        Purpose: Injected collaborators make routes independent of process-wide state.
        """
        gate = RequestGate().with_error_handler(
            lambda failure: PlainTextResponse("own", status_code=409)
        )
        app.add_route("/users/{id}", gate.validate(UserParams, Source.PARAMS)(never_called), methods=["GET"])
        set_error_handler(lambda failure: PlainTextResponse("global", status_code=418))

        response = TestClient(app).get("/users/abc")

        assert response.status_code == 409
        assert response.text == "own"
        assert default_gate() is not gate

    def test_strict_decoder_gate(self, app):
        """
        What it does: Verifies a gate with a strict decoder rejects unknown keys.
        Purpose: Decoder configuration is injectable per gate.
        """
        gate = RequestGate().with_decoder(StructuralDecoder(ignore_unknown_keys=False))
        app.add_route("/search", gate.validate(Search, Source.QUERY)(never_called))

        response = TestClient(app).get("/search?q=x&sort=asc")

        assert response.status_code == 400
        assert "unknown field(s): sort" in response.text

    def test_with_rule_engine(self, app):
        """
        What it does: Verifies with_rule_engine() swaps the validation stage.
        Purpose: Rule engines are pluggable.
        """
        class RejectAll(PydanticRuleEngine):
            def validate(self, instance):
                from reqgate import ValidationFailure
                raise ValidationFailure("rejected by policy")

        gate = RequestGate().with_rule_engine(RejectAll())
        app.add_route("/users/{id}", gate.validate(UserParams, Source.PARAMS)(never_called), methods=["GET"])

        response = TestClient(app).get("/users/1")

        assert response.status_code == 400
        assert response.text == "rejected by policy"

    def test_composed_gates(self, app):
        """
        What it does: Verifies PARAMS and JSON gates stacked on one handler.
        Purpose: Middlewares compose; each source keeps its own value.
        """
        async def handler(request):
            params = validated(request, Source.PARAMS, UserParams)
            body = validated(request, Source.JSON, Account)
            return JSONResponse({"path_id": params.id, "body_id": body.id})

        endpoint = validate(UserParams, Source.PARAMS)(validate(Account, Source.JSON)(handler))
        app.add_route("/users/{id}/account", endpoint, methods=["PUT"])

        response = TestClient(app).put(
            "/users/7/account",
            json={"id": 8, "profile": {"name": "A", "email": "a@example.com"}},
        )

        assert response.status_code == 200
        assert response.json() == {"path_id": 7, "body_id": 8}

    def test_sync_handler(self, app):
        """
        What it does: Verifies plain (sync) handlers are supported.
        Purpose: Starlette accepts sync endpoints; the gate must too.
        """
        def handler(request):
            return PlainTextResponse(str(validated(request, Source.PARAMS, UserParams).id))

        app.add_route("/users/{id}", validate(UserParams, Source.PARAMS)(handler), methods=["GET"])

        response = TestClient(app).get("/users/5")

        assert response.status_code == 200
        assert response.text == "5"

    def test_wrapped_handler_keeps_name(self):
        """
        What it does: Verifies the endpoint keeps the handler's name.
        Purpose: Route names and logs stay meaningful.
        """
        async def get_user(request):
            return PlainTextResponse("ok")

        endpoint = validate(UserParams, Source.PARAMS)(get_user)

        assert endpoint.__name__ == "get_user"


class TestDependency:
    """Tests for RequestGate.dependency() with FastAPI routes."""

    def _app(self, gate):
        app = FastAPI()
        install_exception_handlers(app, gate)

        @app.post("/accounts/{id}")
        async def update_account(
            params: UserParams = Depends(gate.dependency(UserParams, Source.PARAMS)),
            body: Account = Depends(gate.dependency(Account, Source.JSON)),
        ):
            return {"path_id": params.id, "email": body.profile.email}

        return app

    def test_dependency_returns_validated_models(self):
        """
        What it does: Verifies dependencies inject validated models.
        Purpose: FastAPI routes get typed values without reading request.state.
        """
        app = self._app(RequestGate())

        response = TestClient(app).post(
            "/accounts/3",
            json={"id": 3, "profile": {"name": "A", "email": "a@example.com"}},
        )

        assert response.status_code == 200
        assert response.json() == {"path_id": 3, "email": "a@example.com"}

    def test_dependency_failure_uses_gate_error_handler(self):
        """
        What it does: Verifies dependency failures are answered by the gate's error handler.
        Purpose: Same policy for dependencies and wrapped handlers.
        """
        app = self._app(RequestGate(error_handler=json_error_handler))

        response = TestClient(app).post(
            "/accounts/3",
            json={"id": 3, "profile": {"name": "A", "email": "nope"}},
        )

        print(f"Response: {response.status_code} {response.text}")
        assert response.status_code == 400
        assert response.json()["origin"] == "validation"
        assert response.json()["errors"][0]["loc"] == "profile.email"

    def test_dependency_path_param_decode_failure(self):
        """
        What it does: Verifies a bad path parameter is rejected via the dependency.
        Purpose: Decode failures reach the handler too.
        """
        app = self._app(RequestGate())

        response = TestClient(app).post("/accounts/abc", json={})

        assert response.status_code == 400
        assert response.text.startswith("id: ")

    def test_each_dependency_uses_its_own_gate_policy(self):
        """
        What it does: Verifies two gates in one app answer with their own error handlers.
        Purpose: One installed exception handler dispatches to the rejecting gate.
        """
        app = FastAPI()
        json_gate = RequestGate(error_handler=json_error_handler)
        plain_gate = RequestGate()
        install_exception_handlers(app)

        @app.get("/json/{id}")
        async def json_route(params: UserParams = Depends(json_gate.dependency(UserParams, Source.PARAMS))):
            return {"id": params.id}

        @app.get("/plain/{id}")
        async def plain_route(params: UserParams = Depends(plain_gate.dependency(UserParams, Source.PARAMS))):
            return {"id": params.id}

        client = TestClient(app)

        print("Action: GET /json/abc and /plain/abc...")
        json_response = client.get("/json/abc")
        plain_response = client.get("/plain/abc")

        print(f"JSON gate: {json_response.status_code} {json_response.text}")
        print(f"Plain gate: {plain_response.status_code} {plain_response.text}")
        assert json_response.status_code == 400
        assert json_response.headers["content-type"].startswith("application/json")
        assert json_response.json()["origin"] == "decode"
        assert plain_response.status_code == 400
        assert plain_response.headers["content-type"].startswith("text/plain")
        assert plain_response.text.startswith("id: ")


class TestCheck:
    """Tests for RequestGate.check()."""

    def test_source_is_reported_on_a_new_failure(self):
        """
        What it does: Verifies check() reports the source without touching the engine's failure.
        Purpose: Failures are not mutated after creation.
        """
        raised = ValidationFailure("id: too small")

        class FailingEngine:
            def validate(self, instance):
                raise raised

        gate = RequestGate(rule_engine=FailingEngine())

        with pytest.raises(ValidationFailure) as exc_info:
            gate.check(UserParams.model_construct(id=0), Source.PARAMS)

        failure = exc_info.value
        assert failure is not raised
        assert failure.source == Source.PARAMS
        assert failure.description == "id: too small"
        assert raised.source is None
