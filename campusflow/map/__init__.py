"""Campus layout provisioning."""

from .generator import CampusConfig, IntersectionSpec, provision_campus

__all__ = ["CampusConfig", "IntersectionSpec", "provision_campus"]
