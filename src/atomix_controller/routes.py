"""Profile routing configuration rendering.

Each Profile is materialised as a ConfigMap of the same name whose
``config.yaml`` tells the proxy sidecar which store serves which primitives.
The injected ``config`` volume mounts that ConfigMap.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List

import yaml

from .resources import Profile, ResourceKind

CONFIG_FILE = "config.yaml"


@dataclass
class RenderResult:
    """Result of a routing config rendering operation."""

    config_text: str
    config_map: Dict[str, Any]


class RouterConfigRenderer:
    """Render the router config and the ConfigMap carrying it."""

    def __init__(self, file_name: str = CONFIG_FILE) -> None:
        self._file_name = file_name

    @property
    def file_name(self) -> str:
        return self._file_name

    def render(self, profile: Profile) -> RenderResult:
        text = yaml.safe_dump(
            {"routes": self._render_routes(profile)},
            default_flow_style=False,
            sort_keys=False,
        )
        return RenderResult(config_text=text, config_map=self._config_map(profile, text))

    def _render_routes(self, profile: Profile) -> List[Dict[str, Any]]:
        routes = []
        for binding in profile.bindings:
            store = binding.store.resolve(profile.key.namespace)
            routes.append(
                {
                    "store": {"namespace": store.namespace, "name": store.name},
                    "rules": [rule.to_dict() for rule in binding.rules],
                }
            )
        return routes

    def _config_map(self, profile: Profile, text: str) -> Dict[str, Any]:
        kind = ResourceKind.PROFILE
        return {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "namespace": profile.key.namespace,
                "name": profile.key.name,
                "ownerReferences": [
                    {
                        "apiVersion": kind.api_version,
                        "kind": kind.kind,
                        "name": profile.key.name,
                        "uid": profile.uid,
                        "controller": True,
                        "blockOwnerDeletion": True,
                    }
                ],
            },
            "data": {self._file_name: text},
        }
