# -*- coding: utf-8 -*-

# Request Gate
# Copyright (C) 2025 Request Gate contributors
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""
Request gate: decode -> validate -> publish, or reject.

Per request and per gate, the pipeline runs in a fixed order:
  1. Source normalizer   - raw request data -> field map (DecodeFailure)
  2. Structural decoder  - field map -> fresh schema instance (DecodeFailure)
  3. Rule engine         - constraints on the instance (ValidationFailure)
  4. Propagation         - validated instance stored on the request
  5. Downstream handler

Any GateFailure stops the chain and the gate's error handler produces the
response. Programming errors (ConfigurationError) are never caught here.

Usage with Starlette routes (handler-wrapping middleware):

    async def get_user(request):
        params = validated(request, Source.PARAMS, UserParams)
        return JSONResponse({"id": params.id})

    app.add_route("/users/{id}", validate(UserParams, Source.PARAMS)(get_user))

Usage with FastAPI dependencies:

    gate = RequestGate()
    install_exception_handlers(app, gate)

    @app.post("/users")
    async def create_user(body: NewUser = Depends(gate.dependency(NewUser, Source.JSON))):
        ...

The module-level validate(), set_error_handler(), set_rule_engine() and
register_rule() operate on a process-wide default gate. Separate RequestGate
instances carry their own error handler and rule engine and are not affected
by the module-level setters.
"""

import functools
import inspect
import threading
from typing import Any, Awaitable, Callable, Optional, Type, Union

from fastapi import Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response
from loguru import logger
from pydantic import BaseModel

from reqgate.decoder import StructuralDecoder, check_schema
from reqgate.errors import ConfigurationError, GateFailure, ValidationFailure
from reqgate.policy import ErrorHandler, default_error_handler
from reqgate.propagation import publish
from reqgate.rules import PydanticRuleEngine, RuleEngine, RulePredicate
from reqgate.sources import Source, normalize

Handler = Callable[[Request], Union[Response, Awaitable[Response]]]
Endpoint = Callable[[Request], Awaitable[Response]]
Middleware = Callable[[Handler], Endpoint]

# Gate whose dependency rejected the request, read by the exception handler
_REJECTING_GATE_ATTR = "_reqgate_rejecting_gate"


def _schema_class(schema: Any) -> Type[BaseModel]:
    """Accept a model class or an instance of one whose fields the decoder can address."""
    if isinstance(schema, BaseModel):
        schema = type(schema)
    if not (isinstance(schema, type) and issubclass(schema, BaseModel)):
        raise ConfigurationError(
            f"schema must be a pydantic BaseModel subclass, got {schema!r}"
        )
    check_schema(schema)
    return schema


class RequestGate:
    """
    Decode-then-validate pipeline with its error policy and rule engine.

    Collaborators are injected at construction and default to the standard
    implementations. with_*() returns a new gate; set_*() replaces the
    collaborator in place (takes effect for every later request).

    Attributes:
        error_handler: Failure -> response conversion
        rule_engine: Validation stage
        decoder: Structural decoder

    Example:
        >>> gate = RequestGate(error_handler=json_error_handler)
        >>> endpoint = gate.validate(SearchQuery, Source.QUERY)(search)
    """

    def __init__(
        self,
        error_handler: Optional[ErrorHandler] = None,
        rule_engine: Optional[RuleEngine] = None,
        decoder: Optional[StructuralDecoder] = None,
    ):
        self._lock = threading.Lock()
        self._error_handler: ErrorHandler = error_handler or default_error_handler
        self._rule_engine: RuleEngine = rule_engine or PydanticRuleEngine()
        self._decoder = decoder or StructuralDecoder()

    # ----------------------------------------------------------------------------------------------
    # Configuration
    # ----------------------------------------------------------------------------------------------

    @property
    def error_handler(self) -> ErrorHandler:
        with self._lock:
            return self._error_handler

    @property
    def rule_engine(self) -> RuleEngine:
        with self._lock:
            return self._rule_engine

    @property
    def decoder(self) -> StructuralDecoder:
        return self._decoder

    def set_error_handler(self, handler: ErrorHandler) -> None:
        """Replaces the error handler; last write wins."""
        with self._lock:
            self._error_handler = handler
        logger.debug("[RequestGate] Error handler set to {}", getattr(handler, "__name__", handler))

    def set_rule_engine(self, engine: RuleEngine) -> None:
        """Replaces the rule engine; last write wins."""
        with self._lock:
            self._rule_engine = engine
        logger.debug("[RequestGate] Rule engine set to {}", type(engine).__name__)

    def with_error_handler(self, handler: ErrorHandler) -> "RequestGate":
        return RequestGate(handler, self.rule_engine, self.decoder)

    def with_rule_engine(self, engine: RuleEngine) -> "RequestGate":
        return RequestGate(self.error_handler, engine, self.decoder)

    def with_decoder(self, decoder: StructuralDecoder) -> "RequestGate":
        return RequestGate(self.error_handler, self.rule_engine, decoder)

    # ----------------------------------------------------------------------------------------------
    # Pipeline
    # ----------------------------------------------------------------------------------------------

    async def decode(self, schema: Type[BaseModel], source: Source, request: Request) -> BaseModel:
        """
        Reads a fresh, unvalidated schema instance from the request.

        Raises:
            ConfigurationError: Unknown source (checked before any body read)
            DecodeFailure: Malformed or type-incompatible input
        """
        field_map = await normalize(source, request)
        return self.decoder.decode(schema, field_map, source)

    def check(self, instance: BaseModel, source: Optional[Source] = None) -> BaseModel:
        """
        Runs the rule engine on a decoded instance.

        Raises:
            ValidationFailure: One or more constraints were violated
        """
        try:
            return self.rule_engine.validate(instance)
        except ValidationFailure as failure:
            if failure.source is not None or source is None:
                raise
            # Engines do not know the source; report a new failure that carries it
            raise ValidationFailure(
                failure.description, source=source, errors=failure.errors
            ) from failure

    async def run(self, schema: Type[BaseModel], source: Source, request: Request) -> BaseModel:
        """
        Full pipeline for one request: decode, validate, publish.

        Returns:
            Validated instance, also available via validated(request, source)
        """
        instance = await self.decode(schema, source, request)
        result = self.check(instance, source)
        publish(request, source, result)
        logger.debug(
            "[RequestGate] {} {} passed {} gate ({})",
            request.method,
            request.url.path,
            source.value,
            schema.__name__,
        )
        return result

    def reject(self, request: Request, failure: GateFailure) -> Response:
        """Converts a failure into the response sent to the client."""
        source = failure.source.value if isinstance(failure.source, Source) else failure.source
        logger.info(
            "[RequestGate] Rejected {} {}: {} failure from {} source: {}",
            request.method,
            request.url.path,
            failure.origin.value,
            source,
            failure.description.replace("\n", "; "),
        )
        return self.error_handler(failure)

    # ----------------------------------------------------------------------------------------------
    # Registration surface
    # ----------------------------------------------------------------------------------------------

    def validate(self, schema: Any, source: Source) -> Middleware:
        """
        Middleware factory: wraps a request handler with this gate.

        The source is checked when the middleware runs; an unknown source
        raises ConfigurationError out of the request instead of producing a
        4xx response.

        Args:
            schema: pydantic model class (or an instance of one)
            source: Where to read the data from

        Returns:
            Function wrapping a handler (sync or async, taking the request)
            into an async Starlette endpoint. Middlewares compose by nesting:
            validate(A, Source.PARAMS)(validate(B, Source.JSON)(handler))
        """
        schema_class = _schema_class(schema)

        def middleware(handler: Handler) -> Endpoint:
            @functools.wraps(handler)
            async def endpoint(request: Request) -> Response:
                try:
                    await self.run(schema_class, source, request)
                except GateFailure as failure:
                    return self.reject(request, failure)

                if inspect.iscoroutinefunction(handler):
                    return await handler(request)
                result = await run_in_threadpool(handler, request)
                if inspect.isawaitable(result):
                    result = await result
                return result

            return endpoint

        return middleware

    def dependency(self, schema: Any, source: Source) -> Callable[[Request], Awaitable[BaseModel]]:
        """
        FastAPI dependency running this gate and returning the validated instance.

        Failures are raised as GateFailure; register install_exception_handlers()
        so they reach this gate's error handler. The failing gate is recorded
        on the request, so dependencies of several gates can share one app.
        """
        schema_class = _schema_class(schema)

        async def dependency(request: Request) -> BaseModel:
            try:
                return await self.run(schema_class, source, request)
            except GateFailure:
                setattr(request.state, _REJECTING_GATE_ATTR, self)
                raise

        dependency.__name__ = f"validate_{schema_class.__name__}"
        return dependency


# ==================================================================================================
# Process-wide default gate
# ==================================================================================================

_default_gate = RequestGate()


def default_gate() -> RequestGate:
    """Returns the gate used by the module-level helpers."""
    return _default_gate


def rejecting_gate(request: Request) -> Optional[RequestGate]:
    """Returns the gate whose dependency rejected this request, if any."""
    return getattr(request.state, _REJECTING_GATE_ATTR, None)


def validate(schema: Any, source: Source) -> Middleware:
    """Middleware factory bound to the default gate. See RequestGate.validate()."""
    return _default_gate.validate(schema, source)


def set_error_handler(handler: ErrorHandler) -> None:
    """
    Replaces the default gate's error handler.

    Meant to be called during application startup. Already registered
    middlewares pick up the new handler on their next failure.
    """
    _default_gate.set_error_handler(handler)


def set_rule_engine(engine: RuleEngine) -> None:
    """Replaces the default gate's rule engine (e.g. one with custom rules)."""
    _default_gate.set_rule_engine(engine)


def register_rule(name: str, predicate: RulePredicate) -> None:
    """
    Registers a custom named rule on the default gate's rule engine.

    Raises:
        ConfigurationError: The current rule engine does not support named rules
    """
    engine = _default_gate.rule_engine
    register = getattr(engine, "register_rule", None)
    if register is None:
        raise ConfigurationError(
            f"rule engine {type(engine).__name__} does not support custom rules"
        )
    register(name, predicate)
