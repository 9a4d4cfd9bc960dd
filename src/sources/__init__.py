"""Sources: readers for the operational tables the alert engine monitors."""

from src.sources.repository import SourceRepository
from src.sources.schemas import (
    DeliveryRecord,
    RepresentativeMessage,
    StockItem,
    VehicleSnapshot,
    VisitRecord,
)

__all__ = [
    "DeliveryRecord",
    "RepresentativeMessage",
    "SourceRepository",
    "StockItem",
    "VehicleSnapshot",
    "VisitRecord",
]
