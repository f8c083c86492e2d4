from __future__ import annotations

from dataclasses import dataclass

from .delivery import DeliveryService, build_delivery_service
from .generation import GenerationService, build_generation_service


@dataclass(frozen=True)
class Services:
    generation: GenerationService
    delivery: DeliveryService


def build_services(conn, config) -> Services:
    return Services(
        generation=build_generation_service(conn, config),
        delivery=build_delivery_service(conn, config),
    )


__all__ = [
    "DeliveryService",
    "GenerationService",
    "Services",
    "build_delivery_service",
    "build_generation_service",
    "build_services",
]
