import pytest
from checkout.gateway import get_adapter, set_adapter
from checkout.gateway.chain import FakeChain
from checkout.gateway.onchain_adapter import OnchainAdapter
from checkout.inventory import set_inventory
from checkout.inventory.fake_adapter import FakeInventory
from protean.integrations.pytest import DomainFixture

PAYEE = "0x" + "ab" * 20


@pytest.fixture(scope="session")
def checkout_bed():
    from checkout.domain import checkout

    bed = DomainFixture(checkout)
    bed.setup()
    yield bed
    bed.teardown()


@pytest.fixture(autouse=True)
def _ctx(checkout_bed):
    with checkout_bed.domain_context():
        yield


@pytest.fixture()
def inventory():
    fake = FakeInventory()
    set_inventory(fake)
    return fake


@pytest.fixture()
def card():
    return get_adapter("card")


@pytest.fixture()
def mobile_money():
    return get_adapter("mobile_money")


@pytest.fixture()
def chain():
    return FakeChain(head=1000)


@pytest.fixture()
def onchain(chain):
    """Real on-chain verifier on top of an in-memory chain."""
    adapter = OnchainAdapter(
        chain=chain,
        payee_address=PAYEE,
        chain_id=1,
        min_confirmations=3,
        webhook_secret="chain-secret",
    )
    set_adapter("onchain", adapter)
    return adapter


@pytest.fixture()
def catalog(inventory):
    inventory.add_product("shirt", "20.00", "USD", name="Shirt", stock=5)
    inventory.add_product("mug", "7.25", "USD", name="Mug", stock=10)
    inventory.add_product("ape-42", "0.01", "ETH", name="Ape #42", is_nft=True)
    inventory.add_product("basket", "15000", "RWF", name="Basket", stock=3)
    return inventory


@pytest.fixture()
def fill_cart(catalog):
    """Add (product_id, quantity) pairs to an owner's cart, returning the cart id."""
    from checkout.cart.items import AddToCart, process_cart_command

    def _fill(*lines, owner_id="owner-1"):
        result = None
        for product_id, quantity in lines:
            result = process_cart_command(AddToCart(owner_id=owner_id, product_id=product_id, quantity=quantity))
        return result["cart_id"]

    return _fill
