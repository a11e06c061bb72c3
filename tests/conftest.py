import os
import pathlib
import sys
from dataclasses import dataclass
from typing import Callable, List

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import arbor`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from arbor.config import ConfigManager  # noqa: E402
from arbor.custody import (  # noqa: E402
    CollaboratorDirectory,
    InMemoryCountedAssetCollection,
    InMemoryFungibleToken,
    InMemoryNonFungibleCollection,
)
from arbor.protocol import CompositionProtocol  # noqa: E402
from arbor.registry import NodeRef  # noqa: E402


ALICE = "0x" + "a1" * 20
BOB = "0x" + "b0" * 20
CAROL = "0x" + "c0" * 20
PROTOCOL_ADDRESS = "0x" + "ee" * 20
NFT_ADDRESS = "0x" + "11" * 20
USDC_ADDRESS = "0x" + "22" * 20
ITEMS_ADDRESS = "0x" + "33" * 20


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless ARBOR_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_slow = _env_flag('ARBOR_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set ARBOR_RUN_SLOW=1 to enable'))


@pytest.fixture(autouse=True)
def fresh_config(monkeypatch: pytest.MonkeyPatch):
    """Every test starts from default configuration with no ARBOR_* overrides."""
    for name in list(os.environ):
        if name.startswith("ARBOR_") and name != "ARBOR_RUN_SLOW":
            monkeypatch.delenv(name)
    ConfigManager.reset_instance()
    yield
    ConfigManager.reset_instance()


@dataclass
class World:
    """In-memory collaborators wired to one protocol instance."""
    directory: CollaboratorDirectory
    nft: InMemoryNonFungibleCollection
    usdc: InMemoryFungibleToken
    items: InMemoryCountedAssetCollection
    protocol: CompositionProtocol

    alice = ALICE
    bob = BOB
    carol = CAROL

    def node(self, token_id: int) -> NodeRef:
        return NodeRef(self.nft.address, token_id)

    def mint(self, holder: str, *token_ids: int) -> List[NodeRef]:
        """Mint nodes to ``holder`` and approve the protocol to escrow them."""
        for token_id in token_ids:
            self.nft.mint(holder, token_id)
        self.nft.set_approval_for_all(holder, self.protocol.address)
        return [self.node(t) for t in token_ids]

    def fund(self, holder: str, amount) -> None:
        """Give ``holder`` currency and allow the protocol to pull all of it."""
        self.usdc.mint(holder, amount)
        self.usdc.approve(holder, self.protocol.address, self.usdc.balance_of(holder))

    def stock(self, holder: str, asset_id: int, amount) -> None:
        self.items.mint(holder, asset_id, amount)
        self.items.set_approval_for_all(holder, self.protocol.address)


@pytest.fixture
def make_world() -> Callable[..., World]:
    def factory(**protocol_kwargs) -> World:
        directory = CollaboratorDirectory()
        nft = directory.add_non_fungible(InMemoryNonFungibleCollection(NFT_ADDRESS))
        usdc = directory.add_fungible(InMemoryFungibleToken(USDC_ADDRESS))
        items = directory.add_counted_asset(InMemoryCountedAssetCollection(ITEMS_ADDRESS))
        protocol = CompositionProtocol(directory, PROTOCOL_ADDRESS, **protocol_kwargs)
        return World(directory, nft, usdc, items, protocol)
    return factory


@pytest.fixture
def world(make_world) -> World:
    return make_world()
