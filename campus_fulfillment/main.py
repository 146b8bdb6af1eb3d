import asyncio
import logging
from quart import Quart
from quart_cors import cors
from sqlalchemy import text
from campus_fulfillment.config.settings import Config
from campus_fulfillment.core.db_config import DatabaseConfig, make_session_factory
from campus_fulfillment.core.jwt import JWTConfig
from campus_fulfillment.middleware.logger import setup_logger
from campus_fulfillment.middleware.rate_limit import RateLimitMiddleware
from campus_fulfillment.routes.agents_routes import init_agent_routes
from campus_fulfillment.routes.internal_routes import init_internal_routes
from campus_fulfillment.routes.orders_routes import init_order_routes
from campus_fulfillment.routes.wallet_routes import init_wallet_routes
from campus_fulfillment.services.assignment_service import AssignmentService
from campus_fulfillment.services.auth import AuthService
from campus_fulfillment.services.order_service import OrderService
from campus_fulfillment.services.payout_reconciler import PayoutReconciler
from campus_fulfillment.services.paystack_gateway import PaystackGateway
from campus_fulfillment.services.wallet_ledger import WalletLedger
from campus_fulfillment.models.base_model import Base
from campus_fulfillment.models import agent, order, payout, wallet  # noqa: F401  register tables

logger = logging.getLogger(__name__)

async def init_db(engine):
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database connected and tables created")
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}", exc_info=True)
        raise

def create_app(config: Config, session_factory, gateway=None, engine=None, run_background_jobs: bool = True):
    app = Quart(__name__)
    app = cors(app, allow_origin=config.ALLOWED_ORIGINS)

    if gateway is None:
        gateway = PaystackGateway(
            config.PAYSTACK_SECRET_KEY,
            base_url=config.PAYSTACK_BASE_URL,
            timeout=config.GATEWAY_TIMEOUT_SECONDS,
        )

    # Initialize services
    auth_service = AuthService(session_factory, JWTConfig(config), config.INTERNAL_API_KEY)
    wallet_ledger = WalletLedger(session_factory)
    order_service = OrderService(session_factory, wallet_ledger)
    assignment_service = AssignmentService(
        session_factory,
        max_active_orders=config.MAX_ACTIVE_ORDERS,
        poll_interval_seconds=config.POLL_INTERVAL_SECONDS,
    )
    payout_reconciler = PayoutReconciler(
        session_factory, wallet_ledger, gateway, gateway_timeout=config.GATEWAY_TIMEOUT_SECONDS,
    )

    app.register_blueprint(init_agent_routes(auth_service, assignment_service))
    app.register_blueprint(init_order_routes(auth_service, order_service, assignment_service))
    app.register_blueprint(init_wallet_routes(auth_service, wallet_ledger, payout_reconciler))
    app.register_blueprint(init_internal_routes(auth_service, order_service, wallet_ledger))

    background_tasks = []

    @app.before_serving
    async def startup():
        if engine is not None:
            await init_db(engine)
        if run_background_jobs:
            background_tasks.append(asyncio.create_task(payout_reconciler.run_reconciliation_loop(
                interval_seconds=config.RECONCILE_INTERVAL_SECONDS,
                stale_after_seconds=config.STALE_WITHDRAWAL_SECONDS,
            )))
            logger.info("Stale withdrawal sweep scheduled")

    @app.after_serving
    async def shutdown():
        for task in background_tasks:
            task.cancel()
        if engine is not None:
            await engine.dispose()
        logger.info("Server shutdown complete")

    @app.route('/api/v1/health', methods=['GET'])
    async def health_check():
        try:
            async with session_factory() as session:
                await session.execute(text("SELECT 1"))
            return {"status": "healthy", "database": "connected"}, 200
        except Exception as e:
            logger.error(f"Health check failed: {str(e)}", exc_info=True)
            return {"status": "unhealthy", "database": "disconnected"}, 500

    app.asgi_app = RateLimitMiddleware(app.asgi_app, config.RATE_LIMIT)
    return app

async def main():
    config = Config()
    setup_logger(config.LOG_LEVEL, config.LOG_FILE)

    db_config = DatabaseConfig(config)
    engine = db_config.create_engine()
    session_factory = make_session_factory(engine)
    app = create_app(config, session_factory, engine=engine)

    # Start Quart server
    logger.info(f"Quart server starting on {config.HOST}:{config.PORT}")
    from hypercorn.config import Config as HypercornConfig
    from hypercorn.asyncio import serve

    hypercorn_config = HypercornConfig()
    hypercorn_config.bind = [f"{config.HOST}:{config.PORT}"]
    hypercorn_config.loglevel = config.LOG_LEVEL.lower()

    await serve(app, hypercorn_config)

def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Server shutdown initiated")
    except Exception as e:
        logger.error(f"Server failed to start: {str(e)}", exc_info=True)
        raise

if __name__ == "__main__":
    run()
