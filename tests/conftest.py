import pytest


def pytest_addoption(parser):
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests against the live Blockfrost API",
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--run-integration"):
        return
    skip_live = pytest.mark.skip(reason="live Blockfrost test: pass --run-integration")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_live)
