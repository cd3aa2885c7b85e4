from __future__ import annotations
from fastapi import FastAPI, Response

def create_app(metrics, driver=None) -> FastAPI:
    app = FastAPI(title="CloudSync Consumer Metrics")

    @app.get("/health")
    def health():
        return {"ok": True, "counts": dict(driver.counts) if driver is not None else {}}

    @app.get("/metrics")
    def prometheus_metrics():
        return Response(content=metrics.render(), media_type=metrics.content_type)

    return app
