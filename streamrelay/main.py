import logging

from fastapi import FastAPI

from streamrelay.configs import settings
from streamrelay.middleware import CORSAllowListMiddleware, DocsAccessControlMiddleware
from streamrelay.routes import proxy_router

logging.basicConfig(level=settings.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
app = FastAPI(title="streamrelay")
app.add_middleware(DocsAccessControlMiddleware)
app.add_middleware(CORSAllowListMiddleware)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


app.include_router(proxy_router, tags=["proxy"])


def run():
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8888, log_level="info")


if __name__ == "__main__":
    run()
