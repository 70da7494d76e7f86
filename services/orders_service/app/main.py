import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field

from .brokers import BrokerClient, build_broker_client
from .config import Settings, configure_logging
from .domain import ValidationError
from .intake import OrderIntakeHandler
from .publisher import EventPublisher

logger = logging.getLogger(__name__)

PRODUCTS = [
    {"id": 1, "name": "Laptop", "price": 999},
    {"id": 2, "name": "Phone", "price": 499},
    {"id": 3, "name": "Headphones", "price": 99},
]


class CreateOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: Any = Field(default=None, alias="productId")
    user_id: Any = Field(default=None, alias="userId")


class LoginRequest(BaseModel):
    username: str


def create_app(settings: Settings | None = None, broker_client: BrokerClient | None = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        publisher = EventPublisher(
            broker_client or build_broker_client(settings),
            connect_timeout=settings.connect_timeout,
            publish_timeout=settings.publish_timeout,
            reconnect_interval=settings.reconnect_interval,
        )
        app.state.publisher = publisher
        app.state.intake = OrderIntakeHandler(publisher)
        # connection happens in the background; startup never waits on the broker
        publisher.start()
        logger.info("orders-service started (backend=%s)", settings.message_backend)
        try:
            yield
        finally:
            publisher.close()

    app = FastAPI(title="orders-service", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/", response_class=PlainTextResponse)
    def root():
        return "E-Cart Backend is running"

    @app.get("/health")
    def health(request: Request):
        return {"status": "ok", "broker": request.app.state.publisher.state.value}

    @app.get("/products")
    def list_products():
        return PRODUCTS

    @app.post("/auth/login")
    def login(req: LoginRequest):
        # mock token, no credential check
        return {"token": f"mock-jwt-token-for-{req.username}", "user": {"username": req.username}}

    @app.post("/orders", status_code=201)
    def post_orders(req: CreateOrderRequest, request: Request):
        try:
            result = request.app.state.intake.submit_order(req.product_id, req.user_id)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return result.to_dict()

    return app


app = create_app()
