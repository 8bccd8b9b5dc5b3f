import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List

from ..errors import ConfigurationError

logger = logging.getLogger(__name__)

ENTITY_TYPES = ["Account", "Contact", "Lead", "Deal", "Article", "Case"]

_ENTITY_FIELDS = {
    "name": {"type": "string"},
    "industry": {"type": "string"},
    "phone": {"type": "string"},
    "website": {"type": "string"},
}


def _function_tool(name: str, description: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {"name": name, "description": description, "parameters": parameters},
    }


@lru_cache(maxsize=1)
def _default_catalog() -> tuple:
    return (
        _function_tool(
            "fetch_entity",
            "Fetch Salesforce records",
            {
                "type": "object",
                "properties": {
                    "operation": {"type": "string", "enum": ["fetch"]},
                    "entityType": {"type": "string", "enum": ENTITY_TYPES},
                    "identifier": {"type": "string"},
                    "fields": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Fields to return; omit for all fields",
                    },
                },
                "required": ["operation", "entityType", "identifier"],
            },
        ),
        _function_tool(
            "create_entity",
            "Create Salesforce entity",
            {
                "type": "object",
                "properties": {
                    "operation": {"type": "string", "enum": ["create"]},
                    "entityType": {"type": "string", "enum": ENTITY_TYPES},
                    "fields": {
                        "type": "object",
                        "properties": _ENTITY_FIELDS,
                        "required": ["name"],
                    },
                },
                "required": ["operation", "entityType", "fields"],
            },
        ),
        _function_tool(
            "update_entity",
            "Update Salesforce entity",
            {
                "type": "object",
                "properties": {
                    "operation": {"type": "string", "enum": ["update"]},
                    "entityType": {"type": "string", "enum": ENTITY_TYPES},
                    "identifier": {"type": "string"},
                    "fields": {
                        "type": "object",
                        "minProperties": 1,
                        "properties": _ENTITY_FIELDS,
                    },
                },
                "required": ["operation", "entityType", "identifier", "fields"],
            },
        ),
    )


def get_tool_definitions() -> List[Dict[str, Any]]:
    """Return the built-in tool catalog in OpenAI function format."""
    return list(_default_catalog())


def load_tool_catalog(path: Path | str) -> List[Dict[str, Any]]:
    """Load a tool catalog from a JSON file of the form {"tools": [{name, description, parameters}]}.

    Raises:
        ConfigurationError: If the file is unreadable or any entry is malformed.
    """
    path = Path(path)
    logger.info("Loading tool catalog from %s", path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Error loading tool catalog {path}: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("tools"), list):
        raise ConfigurationError(f"Invalid tool catalog {path}: 'tools' list is missing")

    catalog: List[Dict[str, Any]] = []
    seen = set()
    for position, tool in enumerate(data["tools"]):
        if not isinstance(tool, dict):
            raise ConfigurationError(f"Tool #{position} in {path} is not an object")
        name = tool.get("name")
        if not isinstance(name, str) or not name:
            raise ConfigurationError(f"Tool #{position} in {path} has no name")
        if name in seen:
            raise ConfigurationError(f"Duplicate tool {name} in {path}")
        parameters = tool.get("parameters")
        if not isinstance(parameters, dict) or parameters.get("type") != "object":
            raise ConfigurationError(f"Tool {name} in {path} must declare object parameters")
        seen.add(name)
        catalog.append(_function_tool(name, str(tool.get("description") or ""), parameters))

    logger.info("Loaded %d tools from %s", len(catalog), path)
    return catalog
