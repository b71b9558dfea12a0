import pytest
from dependency_injector import providers

from clipscout.main.container import Container
from clipscout.scraping.scrape_server import ScrapeServerClient
from clipscout.search.search_service import SearchService
from clipscout.store.memory_store import MemoryAtomicStore
from clipscout.worker.worker_pool import ScrapeWorkerPool


@pytest.fixture
def container(test_settings) -> Container:
    return Container(settings=providers.Object(test_settings))


def test_memory_backend_builds_in_process_store(container):
    assert isinstance(container.store(), MemoryAtomicStore)


def test_services_share_singletons(container):
    search_service = container.search_service()
    worker_pool = container.worker_pool()

    assert isinstance(search_service, SearchService)
    assert isinstance(worker_pool, ScrapeWorkerPool)
    assert container.job_queue() is container.job_queue()
    assert container.search_cache() is container.search_cache()


def test_scrape_server_is_optional(container):
    assert container.scrape_server() is None


def test_scrape_server_configured_from_settings(test_settings):
    settings = test_settings.model_copy(
        update={"scrape_server_url": "https://scrape.example.com", "scrape_server_api_key": "k"}
    )
    container = Container(settings=providers.Object(settings))

    assert isinstance(container.scrape_server(), ScrapeServerClient)


def test_keys_use_configured_prefix(container):
    assert container.keys().job("abc") == "clipscout-test:job:abc"
