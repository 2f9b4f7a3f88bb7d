"""Campus traffic-light timing and vehicle-flow simulation."""

__version__ = "0.1.0"
