"""
证书控制器的 FastAPI 路由定义。
"""

from fastapi import APIRouter, HTTPException
from . import services
from .errors import (
    CSRConflictError,
    CertControlError,
    ControlPlaneError,
    KeyMaterialError,
    SigningTimeoutError,
)
from .schemas import (
    CertificateStatusResponse,
    EnsureCertificateResponse,
    IdentityDescriptor,
)

router = APIRouter(prefix="/certs", tags=["Certificate Control"])


@router.post("/ensure", response_model=EnsureCertificateResponse)
async def ensure_certificate(identity: IdentityDescriptor) -> EnsureCertificateResponse:
    """
    确保实例的身份证书存在且可用，必要时签发新证书。
    """
    try:
        return await services.ensure_certificate_service(identity)
    except KeyMaterialError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except CSRConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except SigningTimeoutError as e:
        raise HTTPException(status_code=504, detail=str(e))
    except ControlPlaneError as e:
        raise HTTPException(status_code=502, detail=f"控制面调用失败: {str(e)}")
    except CertControlError as e:
        raise HTTPException(status_code=500, detail=f"证书签发失败: {str(e)}")
    except Exception as e:
        # 捕获所有未预期的错误并返回 500
        raise HTTPException(status_code=500, detail=f"内部服务器错误: {str(e)}")


@router.get("/{namespace}/{secret_name}/status", response_model=CertificateStatusResponse)
async def certificate_status(namespace: str, secret_name: str) -> CertificateStatusResponse:
    """
    查询 Secret 中的证书是否可以继续使用。
    """
    try:
        return await services.certificate_status_service(namespace, secret_name)
    except Exception as e:
        # 捕获所有未预期的错误并返回 500
        raise HTTPException(status_code=500, detail=f"内部服务器错误: {str(e)}")
