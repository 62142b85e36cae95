import logging
import sys

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chat_service.api.routes import router as api_router
from chat_service.core.settings import SETTINGS

DEFAULT_CORS_ORIGINS = [
    "http://localhost:5173",
    "http://localhost:4173",
]


def configure_logging() -> None:
    logging.basicConfig(
        level=SETTINGS.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stdout,
    )
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).setLevel(SETTINGS.log_level)


configure_logging()

app = FastAPI(title="rag-chat-service")
app.add_middleware(
    CORSMiddleware,
    allow_origins=SETTINGS.cors_allow_origins or DEFAULT_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(api_router)



def run() -> None:
    uvicorn.run(app, host=SETTINGS.host, port=SETTINGS.port, log_level=SETTINGS.log_level.lower())
