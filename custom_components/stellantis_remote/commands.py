"""Stellantis remote service commands.

This module provides the catalogue of remote services and the envelope sent
to the broker for each command. A command is a service path appended to the
customer's request topic plus a small parameter dict.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
import time
from typing import Any
import uuid


class RemoteService(StrEnum):
    """Remote service paths."""

    THERMAL_PRECONDITIONING = "/ThermalPrecond"
    THERMAL_PRECONDITIONING_DISABLE = "/ThermalPrecond/disable"
    CHARGE = "/Charge"
    CHARGE_DISABLE = "/Charge/disable"
    CHARGE_THRESHOLDS = "/ChargeThresholds"
    DOORS_LOCK = "/Doors/lock"
    DOORS_UNLOCK = "/Doors/unlock"
    HORN = "/Horn"
    LIGHTS = "/Lights"
    WAKE_UP = "/WakeUp"


@dataclass(frozen=True)
class RemoteCommand:
    """Service path and request parameters of one command."""

    service: str
    params: dict[str, Any] = field(default_factory=dict)


def new_correlation_id() -> str:
    """Return a unique correlation id (UUID4 hex + millisecond timestamp)."""
    return f"{uuid.uuid4().hex}{str(int(time.time() * 1000))[:14]}"


def build_envelope(
    command: RemoteCommand,
    access_token: str,
    customer_id: str,
    vin: str,
    correlation_id: str,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Build the message published for a command."""
    timestamp = (now or datetime.now(UTC)).strftime("%Y-%m-%dT%H:%M:%SZ")
    return {
        "access_token": access_token,
        "customer_id": customer_id,
        "correlation_id": correlation_id,
        "req_date": timestamp,
        "vin": vin,
        "req_parameters": dict(command.params),
    }


@dataclass
class CommandResponse:
    """Response correlated to a command."""

    correlation_id: str | None
    """Correlation id echoed by the backend"""

    return_code: Any
    """Status code: 0 means success"""

    payload: dict[str, Any]
    """Full response body"""

    @property
    def is_success(self) -> bool:
        """True if the status code is zero."""
        return str(self.return_code) == "0"

    @classmethod
    def parse(cls, payload: dict[str, Any]) -> CommandResponse:
        """Parse a response body.

        The backend reports either ``return_code`` or ``process_code``; a body
        with neither is treated as failed.
        """
        return_code = payload.get("return_code")
        if return_code is None:
            return_code = payload.get("process_code")
        return cls(
            correlation_id=payload.get("correlation_id"),
            return_code=return_code,
            payload=payload,
        )


class RemoteCommandBuilder:
    """Builder for the supported remote commands."""

    @staticmethod
    def build_command(service: str, **params: Any) -> RemoteCommand:
        """Build a command for an arbitrary service path.

        Args:
            service: Service path, with or without its leading slash
            **params: Request parameters

        Returns:
            Command ready for dispatch
        """
        if not service.startswith("/"):
            service = f"/{service}"
        return RemoteCommand(service=service, params=params)

    @staticmethod
    def start_preconditioning() -> RemoteCommand:
        """Build command to start cabin preconditioning now."""
        return RemoteCommandBuilder.build_command(
            RemoteService.THERMAL_PRECONDITIONING, asap="true"
        )

    @staticmethod
    def stop_preconditioning() -> RemoteCommand:
        """Build command to stop cabin preconditioning."""
        return RemoteCommandBuilder.build_command(
            RemoteService.THERMAL_PRECONDITIONING_DISABLE
        )

    @staticmethod
    def start_charge() -> RemoteCommand:
        """Build command to start charging."""
        return RemoteCommandBuilder.build_command(
            RemoteService.CHARGE, charging_mode="slow"
        )

    @staticmethod
    def stop_charge() -> RemoteCommand:
        """Build command to stop charging."""
        return RemoteCommandBuilder.build_command(RemoteService.CHARGE_DISABLE)

    @staticmethod
    def set_charge_limit(charge_level: int) -> RemoteCommand:
        """Build command to set the charge limit.

        Args:
            charge_level: State of charge limit, clamped to 0-100
        """
        charge_level = max(0, min(100, int(charge_level)))
        return RemoteCommandBuilder.build_command(
            RemoteService.CHARGE_THRESHOLDS, charge_level=charge_level
        )

    @staticmethod
    def lock_doors() -> RemoteCommand:
        """Build command to lock the doors."""
        return RemoteCommandBuilder.build_command(RemoteService.DOORS_LOCK)

    @staticmethod
    def unlock_doors() -> RemoteCommand:
        """Build command to unlock the doors."""
        return RemoteCommandBuilder.build_command(RemoteService.DOORS_UNLOCK)

    @staticmethod
    def horn(count: int = 3) -> RemoteCommand:
        """Build command to sound the horn ``count`` times."""
        return RemoteCommandBuilder.build_command(
            RemoteService.HORN, nb_horn=count, interval=1
        )

    @staticmethod
    def flash_lights(count: int = 3) -> RemoteCommand:
        """Build command to flash the lights ``count`` times."""
        return RemoteCommandBuilder.build_command(
            RemoteService.LIGHTS, nb_light=count, interval=1
        )

    @staticmethod
    def wake_up() -> RemoteCommand:
        """Build command to wake the vehicle."""
        return RemoteCommandBuilder.build_command(RemoteService.WAKE_UP)
