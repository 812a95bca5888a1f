# -*- coding: utf-8 -*-

# Request Gate
# Copyright (C) 2025 Request Gate contributors
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""
Rule engines for the validation stage.

A rule engine receives the decoded (unvalidated) schema instance and either
returns the validated instance or raises ValidationFailure describing every
violated constraint.

PydanticRuleEngine is the default. It runs full pydantic validation over the
decoded values (Field constraints, EmailStr, field/model validators) and then
evaluates custom named rules attached to fields with the Rule marker:

    engine = PydanticRuleEngine()
    engine.register_rule("no_spaces", lambda value: " " not in value)

    class Signup(BaseModel):
        username: Annotated[str, Rule("no_spaces")]
"""

import threading
from dataclasses import dataclass
from typing import Annotated, Any, Callable, Dict, List, Protocol, get_args, get_origin

from loguru import logger
from pydantic import BaseModel, ValidationError

from reqgate.decoder import _SEQUENCE_ORIGINS, _UNION_ORIGINS, _unwrap_optional, field_key
from reqgate.errors import ConfigurationError, ValidationFailure, format_pydantic_errors

RulePredicate = Callable[[Any], bool]


@dataclass(frozen=True)
class Rule:
    """
    Field marker referencing a custom rule registered on the rule engine.

    pydantic ignores unknown Annotated metadata, so the marker has no effect
    until a rule engine evaluates it.

    Attributes:
        name: Name the predicate was registered under
    """

    name: str


class RuleEngine(Protocol):
    """Interface every rule engine implements."""

    def validate(self, instance: BaseModel) -> BaseModel:
        """Return the validated instance or raise ValidationFailure."""
        ...


def _payload(instance: BaseModel) -> Dict[str, Any]:
    """
    Raw input for re-validation: only the fields set by the decoder, keyed by
    input key, with nested models turned back into dicts.
    """
    fields = type(instance).model_fields
    payload: Dict[str, Any] = {}
    for name in instance.model_fields_set:
        payload[field_key(name, fields[name])] = _unwrap(getattr(instance, name))
    return payload


def _unwrap(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return _payload(value)
    if isinstance(value, list):
        return [_unwrap(item) for item in value]
    return value


def _annotation_rules(annotation: Any) -> List[Rule]:
    """
    Rule markers pydantic leaves inside a field annotation.

    Top-level Annotated metadata ends up in FieldInfo.metadata; markers nested
    in Optional/Union arguments stay in the annotation.
    """
    origin = get_origin(annotation)
    if origin is Annotated:
        inner, *metadata = get_args(annotation)
        return [m for m in metadata if isinstance(m, Rule)] + _annotation_rules(inner)
    if origin in _UNION_ORIGINS:
        markers: List[Rule] = []
        for arg in get_args(annotation):
            markers.extend(_annotation_rules(arg))
        return markers
    return []


def _item_rules(annotation: Any) -> List[Rule]:
    """Rule markers on the item type of a sequence field (List[Annotated[T, Rule(...)]])."""
    annotation = _unwrap_optional(annotation)
    if get_origin(annotation) not in _SEQUENCE_ORIGINS:
        return []
    args = get_args(annotation)
    return _annotation_rules(args[0]) if args else []


def _predicate(marker: Rule, loc: str, rules: Dict[str, RulePredicate]) -> RulePredicate:
    predicate = rules.get(marker.name)
    if predicate is None:
        logger.error(
            "[RuleEngine] Field '{}' references unregistered rule '{}'",
            loc,
            marker.name,
        )
        raise ConfigurationError(f"undefined validation rule '{marker.name}' on field '{loc}'")
    return predicate


def _violation(marker: Rule, loc: str) -> Dict[str, str]:
    return {
        "loc": loc,
        "msg": f"failed on the '{marker.name}' rule",
        "type": f"rule_{marker.name}",
    }


class PydanticRuleEngine:
    """
    Default rule engine backed by pydantic model validation.

    Example:
        >>> engine = PydanticRuleEngine()
        >>> engine.register_rule("even", lambda value: value % 2 == 0)
        >>> engine.validate(decoded)  # raises ValidationFailure on violation
    """

    def __init__(self):
        self._rules: Dict[str, RulePredicate] = {}
        self._lock = threading.Lock()

    @property
    def rules(self) -> Dict[str, RulePredicate]:
        """Snapshot of registered custom rules."""
        with self._lock:
            return dict(self._rules)

    def register_rule(self, name: str, predicate: RulePredicate) -> None:
        """
        Registers a custom named rule.

        Registering an existing name replaces the previous predicate.

        Args:
            name: Name referenced by Rule("name") markers
            predicate: Returns True when the value satisfies the rule
        """
        if not name:
            raise ConfigurationError("rule name must not be empty")
        with self._lock:
            self._rules[name] = predicate
        logger.debug("[RuleEngine] Registered rule '{}'", name)

    def validate(self, instance: BaseModel) -> BaseModel:
        """
        Validates a decoded instance.

        Args:
            instance: Instance built by the structural decoder

        Returns:
            Fully validated instance of the same schema

        Raises:
            ValidationFailure: One or more constraints were violated
            ConfigurationError: A field references an unregistered rule
        """
        schema = type(instance)
        try:
            validated = schema.model_validate(_payload(instance))
        except ValidationError as e:
            description, errors = format_pydantic_errors(e)
            raise ValidationFailure(description, errors=errors) from e

        violations: List[Dict[str, str]] = []
        self._check_rules(validated, "", self.rules, violations)
        if violations:
            description = "\n".join(f"{v['loc']}: {v['msg']}" for v in violations)
            raise ValidationFailure(description, errors=violations)

        return validated

    def _check_rules(
        self,
        instance: BaseModel,
        prefix: str,
        rules: Dict[str, RulePredicate],
        violations: List[Dict[str, str]],
    ) -> None:
        for name, field in type(instance).model_fields.items():
            value = getattr(instance, name, None)
            loc = f"{prefix}{field_key(name, field)}"

            for marker in field.metadata:
                if isinstance(marker, Rule) and not _predicate(marker, loc, rules)(value):
                    violations.append(_violation(marker, loc))

            # Markers inside Optional[Annotated[T, Rule(...)]] apply to non-None values
            for marker in _annotation_rules(field.annotation):
                predicate = _predicate(marker, loc, rules)
                if value is not None and not predicate(value):
                    violations.append(_violation(marker, loc))

            item_checks = [
                (marker, _predicate(marker, loc, rules))
                for marker in _item_rules(field.annotation)
            ]
            if item_checks and value is not None:
                for index, item in enumerate(value):
                    for marker, predicate in item_checks:
                        if item is not None and not predicate(item):
                            violations.append(_violation(marker, f"{loc}.{index}"))

            if isinstance(value, BaseModel):
                self._check_rules(value, f"{loc}.", rules, violations)
            elif isinstance(value, list):
                for index, item in enumerate(value):
                    if isinstance(item, BaseModel):
                        self._check_rules(item, f"{loc}.{index}.", rules, violations)
