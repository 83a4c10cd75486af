"""FreightLens: AI tool-calling report builder for shipment analytics."""

__version__ = "0.1.0"
