from __future__ import annotations

from fastapi import FastAPI
import uvicorn

from src.core.settings import Settings, load_settings


def create_app(settings: Settings) -> FastAPI:
    app = FastAPI(title="Repository bridge API")

    @app.get("/health")
    def health() -> dict:
        return {
            "status": "ok",
            "address": settings.address,
            "destination": f"{settings.client_destination.domain}:{settings.client_destination.port}",
        }

    return app


def main() -> None:
    s = load_settings()
    uvicorn.run(create_app(s), host=s.api_host, port=s.api_port)


if __name__ == "__main__":
    main()
