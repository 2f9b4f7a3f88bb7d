"""Agent implementations for campusflow simulation."""

from .vehicle import FlowResult, VehicleFlowModel

__all__ = ["FlowResult", "VehicleFlowModel"]
