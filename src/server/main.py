"""
FastAPI 应用入口点。
"""

import sys

from loguru import logger
from contextlib import asynccontextmanager

from fastapi import FastAPI
from src.server.certs import services as cert_services
from src.server.certs.router import router as certs_router

from src.server.config import config

logger.remove()
logger.add(sys.stderr, level=config.log_level.upper())


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        controller = cert_services.get_controller()
        logger.info(
            f"证书控制器已就绪: backend={config.cert_backend}, "
            f"watch_timeout={controller.watch_timeout_seconds}s"
        )
        yield
    except Exception as e:
        logger.warning(f"启动证书控制器失败：{e}")
        raise e
    finally:
        try:
            await cert_services.close_controller()
            logger.info("证书控制器已关闭")
        except Exception as e:
            logger.error(f"关闭证书控制器时发生错误: {e}")

app = FastAPI(title="Cluster Certificate Control Service", lifespan=lifespan)

app.include_router(certs_router, prefix="/v1")

logger.info(f"config: {config.model_dump_json(indent=4)}")
