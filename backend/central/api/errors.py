"""
自定义异常模块

所有业务异常都继承自 AppError，在 main.py 中有统一的异常处理器，
转换为 {"code", "message", "data"} 格式的响应。

错误分类：
- NotFoundError: 令牌/套餐/身份/授权不存在
- AlreadyProcessedError / AlreadyClaimedError: 已处理（重复事件、令牌已领取）
- TokenExpiredError: 领取令牌已过期
- UnauthorizedError: 共享密钥错误、签名无效
- ValidationFailedError: 请求字段缺失或不合法
- UpstreamError: 调用支付网关/远端产品失败
"""
from __future__ import annotations


class AppError(Exception):
    """
    应用自定义异常类

    - code: 业务错误码（用于调用方区分不同错误）
    - message: 错误消息
    - status_code: HTTP 状态码

    使用示例：
        raise AppError(code=400001, message="Invalid webhook payload", status_code=400)
    """

    default_code = 500000
    default_status = 500
    default_message = "Internal error"

    def __init__(
        self,
        *,
        code: int | None = None,
        message: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.code = code if code is not None else self.default_code
        self.message = message if message is not None else self.default_message
        self.status_code = status_code if status_code is not None else self.default_status
        super().__init__(self.message)


class NotFoundError(AppError):
    default_code = 404000
    default_status = 404
    default_message = "Not found"


class AlreadyProcessedError(AppError):
    default_code = 409000
    default_status = 409
    default_message = "Already processed"


class AlreadyClaimedError(AlreadyProcessedError):
    default_code = 409101
    default_message = "Token already claimed"


class TokenExpiredError(AppError):
    default_code = 410101
    default_status = 410
    default_message = "Token expired"


class UnauthorizedError(AppError):
    default_code = 401000
    default_status = 401
    default_message = "Unauthorized"


class ValidationFailedError(AppError):
    default_code = 400000
    default_status = 400
    default_message = "Validation failed"


class UpstreamError(AppError):
    default_code = 502000
    default_status = 502
    default_message = "Upstream call failed"


def claim_token_not_found() -> NotFoundError:
    return NotFoundError(code=404101, message="Invalid claim token")


def bundle_not_found() -> NotFoundError:
    return NotFoundError(code=404201, message="Bundle not found")


def entitlement_not_found() -> NotFoundError:
    return NotFoundError(code=404301, message="Entitlement not found")


def missing_field(name: str) -> ValidationFailedError:
    return ValidationFailedError(code=400101, message=f"Missing required field: {name}")


def identity_not_found(ref: str | int) -> NotFoundError:
    return NotFoundError(code=404401, message=f"No identity for {ref}")


def product_not_found(product_id: str) -> NotFoundError:
    return NotFoundError(code=404501, message=f"Product {product_id} not found")
