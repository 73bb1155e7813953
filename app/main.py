import uvicorn
from fastapi import FastAPI

from app.api.v1.api import api_router as api_router_v1
from app.core.config import settings
from app.utils.logging_config import setup_project_logging

# Настраиваем логирование при запуске приложения
setup_project_logging()

app = FastAPI(title=settings.PROJECT_NAME,
              openapi_url=f"{settings.API_V1_STR}/openapi.json",
              docs_url=f"{settings.API_V1_STR}/docs")


@app.get("/health")
def health():
    return {"status": "ok"}


# API маршруты
app.include_router(api_router_v1, prefix=settings.API_V1_STR)

if __name__ == "__main__":
    uvicorn.run("app.main:app", reload=True, port=8787)
