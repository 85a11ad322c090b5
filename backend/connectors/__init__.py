"""Source plugins package."""
from connectors.attio import AttioConnector
from connectors.axiscare import AxisCareConnector
from connectors.base import BaseConnector
from connectors.clio import ClioConnector
from connectors.pipedrive import PipedriveConnector

__all__ = [
    "AttioConnector",
    "AxisCareConnector",
    "BaseConnector",
    "ClioConnector",
    "PipedriveConnector",
]
