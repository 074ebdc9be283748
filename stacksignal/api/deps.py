from fastapi import Depends, Request

from stacksignal.services.container import ServiceContainer
from stacksignal.services.dedupe import Deduplicator
from stacksignal.services.processor import BatchProcessor
from stacksignal.services.queue import QueueManager


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_processor(services: ServiceContainer = Depends(get_services)) -> BatchProcessor:
    return services.processor


def get_queue(services: ServiceContainer = Depends(get_services)) -> QueueManager:
    return services.queue


def get_deduplicator(services: ServiceContainer = Depends(get_services)) -> Deduplicator:
    return services.deduplicator
