"""Run the mint worker loop without the HTTP API."""

import asyncio

from storymint.common.config import settings
from storymint.common.db import SessionLocal
from storymint.common.logging import configure_logging
from storymint.common.startup import log_startup_config
from storymint.services.minting.chain import make_chain_client
from storymint.services.minting.saga import MintSaga
from storymint.services.minting.worker import MintWorker


def main() -> None:
    configure_logging()
    log_startup_config(settings, ["service_name", "database_dsn", "chain_backend", "poll_strategy"])
    saga = MintSaga(SessionLocal, make_chain_client(), settings.service_name)
    worker = MintWorker(SessionLocal, saga, service_name=settings.service_name)
    asyncio.run(worker.run_forever())


if __name__ == "__main__":
    main()
