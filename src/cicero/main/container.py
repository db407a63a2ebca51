import importlib

from dependency_injector import containers, providers

from cicero.harvest.orchestrator import RunOrchestrator
from cicero.main.config import get_settings
from cicero.notifications.payload_builder import NotificationPayloadBuilder
from cicero.observability.alerts import build_alert_sink
from cicero.outbox.outbox_repo import outbox_transaction
from cicero.outbox.outbox_worker import OutboxWorker
from cicero.scheduler.scheduler_state_repo import scheduler_state_transaction
from cicero.worker.lock.distributed_lock import DistributedLock
from cicero.worker.redis.client import get_redis


class Container(containers.DeclarativeContainer):
    settings = providers.Callable(get_settings)
    redis_client = providers.Callable(get_redis)

    # Provided by the deployment
    client_registry = providers.Dependency()
    platform_fetcher = providers.Dependency()
    count_source = providers.Dependency()
    content_source = providers.Dependency()
    message_transport = providers.Dependency()

    alert_sink = providers.Singleton(build_alert_sink, settings=settings)

    outbox_transaction_factory = providers.Object(outbox_transaction)
    state_transaction_factory = providers.Object(scheduler_state_transaction)

    distributed_lock = providers.Factory(DistributedLock, redis_client=redis_client)

    payload_builder = providers.Factory(
        NotificationPayloadBuilder,
        transaction_factory=outbox_transaction_factory,
        settings=settings,
    )

    # One orchestrator per process so its in-flight flag spans runs
    run_orchestrator = providers.Singleton(
        RunOrchestrator,
        lock=distributed_lock,
        client_registry=client_registry,
        platform_fetcher=platform_fetcher,
        count_source=count_source,
        content_source=content_source,
        payload_builder=payload_builder,
        alert_sink=alert_sink,
        state_transaction_factory=state_transaction_factory,
        settings=settings,
    )

    outbox_worker = providers.Factory(
        OutboxWorker,
        transport=message_transport,
        transaction_factory=outbox_transaction_factory,
        settings=settings,
    )


def build_container(settings=None) -> Container:
    """Create the process container and wire deployment collaborators.

    ``COLLABORATORS_FACTORY`` names a ``module:function`` returning a mapping of
    collaborator names (``client_registry``, ``platform_fetcher``, ...) to
    instances.
    """
    settings = settings or get_settings()
    container = Container()
    container.settings.override(providers.Object(settings))

    if settings.collaborators_factory:
        factory = import_string(settings.collaborators_factory)
        for name, instance in factory(settings).items():
            if name not in COLLABORATOR_SLOTS:
                raise ValueError(f"Unknown collaborator '{name}'")
            getattr(container, name).override(providers.Object(instance))

    return container


COLLABORATOR_SLOTS = (
    "client_registry",
    "platform_fetcher",
    "count_source",
    "content_source",
    "message_transport",
    "alert_sink",
)


def import_string(dotted_path: str):
    module_path, _, attribute = dotted_path.partition(":")
    if not attribute:
        raise ValueError(f"Expected 'module:attribute', got '{dotted_path}'")
    module = importlib.import_module(module_path)
    return getattr(module, attribute)
