"""Helpers shared by command modules."""

from __future__ import annotations

import os

from rollgate.core.errors import RequestValidationError
from rollgate.core.models import ClusterRef
from rollgate.infra.k8s.utils import parse_duration
from rollgate.runtime.config import ConfigData


def cli_actor() -> str:
    return f"cli:{os.environ.get('USER', 'unknown')}"


def parse_steps(value: str) -> list[int]:
    """Parse ``"5,25,50,100"`` into a list of percentages."""
    try:
        return [int(part) for part in value.split(",") if part.strip()]
    except ValueError as e:
        raise RequestValidationError(
            f"Invalid --steps value: {value!r}",
            details="Use comma-separated integers, e.g. 5,25,50,75,100",
        ) from e


def parse_optional_duration(value: str | None, option: str) -> float | None:
    if value is None:
        return None
    try:
        return parse_duration(value)
    except ValueError as e:
        raise RequestValidationError(f"Invalid {option} value: {value!r}", details=str(e)) from e


def resolve_clusters(config: ConfigData, names: list[str]) -> list[ClusterRef]:
    refs: list[ClusterRef] = []
    for name in names:
        try:
            refs.append(config.cluster_ref(name))
        except KeyError as e:
            raise RequestValidationError(
                f"Unknown target cluster '{name}'",
                details=f"{e.args[0]}\n\nRegister clusters under config.clusters in rollgate.yaml.",
            ) from e
    return refs
