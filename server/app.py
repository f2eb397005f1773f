"""
FastAPI server for the barbershop phone receptionist.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- GET|POST /twiml: TwiML for the Twilio voice webhook (opens the media stream)
- POST /xfer: TwiML that stops the stream and dials the owner
- WS /ws: Twilio Media Streams WebSocket
"""

import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Any
from urllib.parse import parse_qs
from xml.sax.saxutils import escape, quoteattr
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request, Response
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from src.receptionist.config import get_config, init_config, ConfigError
from src.receptionist.extract import mask_phone


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    total_calls: int = 0
    active_calls: int = 0
    transfers: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": self.total_calls,
            "active_calls": self.active_calls,
            "transfers": self.transfers,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting receptionist server...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            ws_url=config.ws_url,
            shop_name=config.shop_name,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")


app = FastAPI(
    title="Barbershop Phone Receptionist",
    description="Answers calls and books appointments over Twilio Media Streams",
    version="1.0.0",
    lifespan=lifespan,
)


async def _webhook_params(request: Request) -> Dict[str, str]:
    """Twilio webhook parameters from the query string or the form body."""
    params = {k: v for k, v in request.query_params.items()}
    if request.method == "POST":
        body = (await request.body()).decode("utf-8", errors="replace")
        for key, values in parse_qs(body).items():
            if values:
                params[key] = values[0]
    return params


def build_stream_twiml(ws_url: str, caller: str = "") -> str:
    """TwiML that connects the call to our media stream WebSocket."""
    parameter = ""
    if caller:
        parameter = f"\n            <Parameter name=\"from\" value={quoteattr(caller)} />"
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Connect>
        <Stream url={quoteattr(ws_url)}>{parameter}
        </Stream>
    </Connect>
</Response>"""


def build_transfer_twiml(owner_phone: str, caller_id: str = "") -> str:
    """TwiML that ends the media stream and dials the owner."""
    caller_id_attr = f" callerId={quoteattr(caller_id)}" if caller_id else ""
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Stop><Stream /></Stop>
    <Say>Connecting you to the owner now.</Say>
    <Dial{caller_id_attr}>{escape(owner_phone)}</Dial>
</Response>"""


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": metrics.active_calls,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


@app.post("/twiml")
@app.get("/twiml")
async def generate_twiml(request: Request) -> Response:
    """
    Generate TwiML for the Twilio voice webhook.

    The caller's number is forwarded to the media stream as the `from`
    custom parameter so the receptionist can offer "use this number".
    """
    config = get_config()
    params = await _webhook_params(request)
    caller = params.get("From", "")

    twiml = build_stream_twiml(config.ws_url, caller)

    logger.info("Generated TwiML", ws_url=config.ws_url, caller=mask_phone(caller))

    return Response(
        content=twiml,
        media_type="application/xml",
    )


@app.post("/xfer")
async def transfer_twiml(request: Request) -> Response:
    """TwiML fetched by Twilio after a live call is redirected for transfer."""
    config = get_config()
    metrics.transfers += 1

    if not config.owner_phone:
        logger.warning("Transfer requested without OWNER_PHONE")
        twiml = """<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Say>Sorry, no one is available right now. Please call back later.</Say>
    <Hangup />
</Response>"""
    else:
        twiml = build_transfer_twiml(config.owner_phone, config.twilio_caller_id)
        logger.info("Serving transfer TwiML", owner=mask_phone(config.owner_phone))

    return Response(content=twiml, media_type="application/xml")


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    One `CallGateway` per connection. The loop ends when Twilio disconnects
    or the gateway ends the call itself (goodbye, transfer, stop).
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1
    metrics.total_calls += 1
    metrics.active_calls += 1

    logger.info("WebSocket connected", active_calls=metrics.active_calls)

    # Import here to avoid circular imports and speed up startup
    from src.receptionist.gateway import create_gateway

    gateway = None

    async def send_message(message: str) -> None:
        """Send a message to the WebSocket."""
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.error("Failed to send WebSocket message", error=str(e))

    async def close_stream() -> None:
        await websocket.close()

    try:
        gateway = await create_gateway(send_message, close_stream)

        while gateway.is_active:
            try:
                message = await websocket.receive_text()
                await gateway.handle_message(message)

            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", call_id=gateway.call_id)
                break
            except RuntimeError as e:
                # Socket already closed from our side.
                logger.info("WebSocket closed", call_id=gateway.call_id, reason=str(e))
                break
            except Exception as e:
                logger.error(
                    "Error handling WebSocket message",
                    call_id=gateway.call_id,
                    error=str(e),
                )
                metrics.errors += 1
                continue

    except Exception as e:
        logger.error("WebSocket handler error", error=str(e))
        metrics.errors += 1

    finally:
        if gateway:
            try:
                await gateway.stop()
            except Exception as e:
                logger.error("Error stopping gateway", error=str(e))

        metrics.active_connections -= 1
        metrics.active_calls -= 1

        logger.info(
            "Connection closed",
            call_id=gateway.call_id if gateway else "",
            active_calls=metrics.active_calls,
        )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    logger.info("Starting server", port=config.port)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
