"""Backend healthchecks, socket-mark dialling and IPVS service models for load balancers."""

__version__ = "0.1.0"