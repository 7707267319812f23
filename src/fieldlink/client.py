"""Assemble a complete fieldlink client under one data directory.

    client = open_client(transport, home="~/.fieldlink", runtime=runtime)
    client.start()          # drain worker (+ model checks when a source is given)
    client.monitor.run(signal_source)
    ...
    client.close()

Every table (queue, cache, sessions, models, receipt ledger) is persisted
under `home`, so a restart picks up where the previous process stopped.
"""
from dataclasses import dataclass
from pathlib import Path

from fieldlink.advisory.orchestrator import AdvisoryOrchestrator
from fieldlink.advisory.session import SessionRegistry
from fieldlink.advisory.translation import TranslationGateway, TranslationService
from fieldlink.cache.store import CacheStore
from fieldlink.config.paths import cache_path, data_home, ledger_path, model_root, session_path
from fieldlink.connectivity.monitor import ConnectivityMonitor
from fieldlink.core.events import ReceiptBus
from fieldlink.core.ledger import LedgerStore
from fieldlink.models.store import ModelStore
from fieldlink.models.updater import ArtifactSource, InferenceRuntime, ModelUpdateManager
from fieldlink.sync.engine import SyncEngine, open_engine
from fieldlink.sync.transport import Transport


@dataclass
class FieldlinkClient:
    home: Path
    bus: ReceiptBus
    monitor: ConnectivityMonitor
    engine: SyncEngine
    cache: CacheStore
    sessions: SessionRegistry
    models: ModelStore
    updater: ModelUpdateManager | None
    orchestrator: AdvisoryOrchestrator

    def start(self) -> None:
        self.engine.start()
        if self.updater is not None:
            self.updater.start()

    def close(self) -> None:
        self.orchestrator.close()
        self.cache.flush()
        if self.updater is not None:
            self.updater.close()
        self.engine.close()
        self.monitor.stop()


def open_client(
    transport: Transport,
    home: str | Path | None = None,
    runtime: InferenceRuntime | None = None,
    artifact_source: ArtifactSource | None = None,
    translation_service: TranslationService | None = None,
    monitor: ConnectivityMonitor | None = None,
) -> FieldlinkClient:
    """Wire every component against the tables persisted under home.

    Args:
        transport: Advisory service transport
        home: Data directory (default: $FIELDLINK_HOME or ~/.fieldlink)
        runtime: Local inference runtime (detect() refuses without one)
        artifact_source: Model manifest/artifact source (no updates without one)
        translation_service: Translation/speech collaborator (passthrough without one)
        monitor: Existing connectivity monitor (default: a fresh stable-OFFLINE one)
    """
    home = Path(home).expanduser() if home is not None else data_home()
    bus = ReceiptBus(ledger=LedgerStore(ledger_path(home)))
    monitor = monitor or ConnectivityMonitor(bus=bus)

    engine = open_engine(monitor, transport, home, bus=bus)
    cache = CacheStore(cache_path(home), bus=bus)
    sessions = SessionRegistry(session_path(home), bus=bus)
    models = ModelStore(model_root(home), bus=bus)
    updater = None
    if artifact_source is not None:
        updater = ModelUpdateManager(models, monitor, artifact_source, bus=bus)

    orchestrator = AdvisoryOrchestrator(
        monitor,
        engine,
        cache,
        sessions=sessions,
        translation=TranslationGateway(translation_service, bus=bus),
        update_manager=updater,
        runtime=runtime,
        bus=bus,
    )
    return FieldlinkClient(
        home=home,
        bus=bus,
        monitor=monitor,
        engine=engine,
        cache=cache,
        sessions=sessions,
        models=models,
        updater=updater,
        orchestrator=orchestrator,
    )
