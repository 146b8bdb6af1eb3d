import asyncio
import uuid
import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from campus_fulfillment.config.settings import Config
from campus_fulfillment.core.db_config import make_session_factory
from campus_fulfillment.core.errors import GatewayError
from campus_fulfillment.models.base_model import Base
from campus_fulfillment.models.agent import DeliveryAgent, VehicleType
from campus_fulfillment.models.payout import AgentPayoutProfile
from campus_fulfillment.models import order, payout, wallet  # noqa: F401
from campus_fulfillment.services.assignment_service import AssignmentService
from campus_fulfillment.services.order_service import OrderService
from campus_fulfillment.services.payout_reconciler import PayoutReconciler
from campus_fulfillment.services.wallet_ledger import WalletLedger

# Test configuration
@pytest.fixture
def config(tmp_path):
    class TestConfig(Config):
        def __init__(self):
            self.APP_ENV = "testing"
            self.DEBUG = False
            self.PORT = 5000
            self.HOST = "127.0.0.1"
            self.SECRET_KEY = "test-secret-key"
            self.JWT_ALGORITHM = "HS256"
            self.JWT_EXPIRATION_TIME = 3600
            self.INTERNAL_API_KEY = "test-internal-key"
            self.DATABASE_URL = f"sqlite+aiosqlite:///{tmp_path / 'fulfillment.db'}"
            self.DB_HOST = None
            self.DB_PORT = None
            self.DB_NAME = None
            self.DB_USER = None
            self.DB_PASSWORD = None
            self.PAYSTACK_SECRET_KEY = "sk_test_key"
            self.PAYSTACK_BASE_URL = "https://api.paystack.test"
            self.GATEWAY_TIMEOUT_SECONDS = 2.0
            self.MAX_ACTIVE_ORDERS = 2
            self.POLL_INTERVAL_SECONDS = 15
            self.RECONCILE_INTERVAL_SECONDS = 300
            self.STALE_WITHDRAWAL_SECONDS = 600
            self.RATE_LIMIT = "100 per minute"
            self.LOG_LEVEL = "DEBUG"
            self.LOG_FILE = str(tmp_path / "test.log")
            self.ALLOWED_ORIGINS = "*"

        def _validate(self):
            pass  # Skip validation for the file-backed SQLite database

    return TestConfig()

@pytest.fixture
async def engine(config):
    # A file database, so every pooled connection sees the same data.
    engine = create_async_engine(config.DATABASE_URL, echo=False, connect_args={"timeout": 15})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()

@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)

class FakeGateway:
    """In-memory stand-in for the Paystack client."""

    def __init__(self):
        self.account_name = "ADA OBI"
        self.fail_resolve = False
        self.fail_register = False
        self.fail_transfer = False
        self.transfer_delay = 0
        self.transfer_states = {}
        self.transfers = []
        self.registered = []

    async def resolve_account(self, account_number, bank_code):
        if self.fail_resolve:
            raise GatewayError("Could not resolve account name", gateway_status=422)
        return self.account_name

    async def register_payee(self, account_number, bank_code, name):
        if self.fail_register:
            raise GatewayError("Recipient rejected", gateway_status=400)
        self.registered.append((account_number, bank_code, name))
        return f"RCP_{account_number}"

    async def initiate_transfer(self, recipient_code, amount, reference, reason):
        if self.transfer_delay:
            await asyncio.sleep(self.transfer_delay)
        if self.fail_transfer:
            raise GatewayError("Insufficient balance in transfer account", gateway_status=400)
        self.transfers.append({"recipient": recipient_code, "amount": amount, "reference": reference, "reason": reason})
        return f"TRF_{reference[:8]}"

    async def fetch_transfer(self, reference):
        state = self.transfer_states.get(reference)
        if state is None:
            raise GatewayError("Transfer not found", gateway_status=404)
        if isinstance(state, Exception):
            raise state
        return state

@pytest.fixture
def gateway():
    return FakeGateway()

@pytest.fixture
def wallet_ledger(session_factory):
    return WalletLedger(session_factory)

@pytest.fixture
def order_service(session_factory, wallet_ledger):
    return OrderService(session_factory, wallet_ledger)

@pytest.fixture
def assignment_service(session_factory):
    return AssignmentService(session_factory, max_active_orders=2)

@pytest.fixture
def payout_reconciler(session_factory, wallet_ledger, gateway):
    return PayoutReconciler(session_factory, wallet_ledger, gateway, gateway_timeout=0.5)

@pytest.fixture
def make_agent(session_factory):
    async def _make_agent(available=True, vehicle_type=VehicleType.BICYCLE):
        async with session_factory() as session:
            agent = DeliveryAgent(user_id=uuid.uuid4(), is_available=available, vehicle_type=vehicle_type)
            session.add(agent)
            await session.commit()
            return agent
    return _make_agent

@pytest.fixture
def make_order(order_service):
    async def _make_order(subtotal=1700, delivery_fee=300, total=None):
        return await order_service.create_order(
            seller_id=uuid.uuid4(),
            seller_type="cafeteria",
            customer_id=uuid.uuid4(),
            delivery_address="Hall 3, Room 214",
            subtotal=subtotal,
            delivery_fee=delivery_fee,
            total=total,
        )
    return _make_order

@pytest.fixture
def verify_agent(session_factory):
    """Store an already-registered payee for the agent."""
    async def _verify_agent(agent, account_number="0123456789", bank_code="058"):
        async with session_factory() as session:
            session.add(AgentPayoutProfile(
                user_id=agent.user_id,
                account_number=account_number,
                bank_code=bank_code,
                account_name="ADA OBI",
                recipient_code=f"RCP_{account_number}",
            ))
            await session.commit()
    return _verify_agent
