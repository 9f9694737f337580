from typing import Dict, Any, List
from dataclasses import dataclass, field
import copy

import jsonschema
from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError


def _extend_with_default(validator_class):
    """Validator that fills in schema defaults while validating properties"""
    validate_properties = validator_class.VALIDATORS["properties"]

    def set_defaults(validator, properties, instance, schema):
        if isinstance(instance, dict):
            for prop, subschema in properties.items():
                if isinstance(subschema, dict) and "default" in subschema:
                    instance.setdefault(prop, copy.deepcopy(subschema["default"]))
        yield from validate_properties(validator, properties, instance, schema)

    return jsonschema.validators.extend(validator_class, {"properties": set_defaults})


DefaultFillingValidator = _extend_with_default(Draft7Validator)


@dataclass
class ValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    params: Dict[str, Any] = field(default_factory=dict)


# Parameter validation
class ToolParameterValidator:
    @staticmethod
    def check_schema(schema: Dict[str, Any]) -> List[str]:
        """Problems with a parameter schema; empty when usable"""
        if not isinstance(schema, dict):
            return ["Parameter schema must be a JSON object"]
        try:
            Draft7Validator.check_schema(schema)
        except SchemaError as e:
            return [f"Invalid parameter schema: {e.message}"]
        if schema.get("type", "object") != "object":
            return ["Parameter schema must describe an object"]
        return []

    @staticmethod
    def validate_tool_call(schema: Dict[str, Any], parameters: Dict[str, Any]) -> ValidationResult:
        if not isinstance(parameters, dict):
            return ValidationResult(False, ["Parameters must be an object"])

        params = copy.deepcopy(parameters)
        validator = DefaultFillingValidator(schema)
        errors = sorted(validator.iter_errors(params), key=lambda e: list(e.path))
        if errors:
            messages = []
            for error in errors:
                location = ".".join(str(part) for part in error.path)
                messages.append(f"{location}: {error.message}" if location else error.message)
            return ValidationResult(False, messages)

        return ValidationResult(True, [], params)
