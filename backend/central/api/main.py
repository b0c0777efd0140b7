"""
API 路由聚合模块

将所有业务路由模块聚合到一个统一的 router 中，注册到主应用（central/main.py）上。

路由模块说明：
- webhooks: Stripe 支付事件、外部表单提交
- check / entitlements: 访问查询、产品上报
- claim: 领取页面
- checkout: 结账入口
- admin: 管理端
- utils: 健康检查
"""
from fastapi import APIRouter

from central.api.routes import (
    admin,
    check,
    checkout,
    claim,
    entitlements,
    utils,
    webhooks,
)

api_router = APIRouter()

api_router.include_router(webhooks.router)  # /webhooks/*
api_router.include_router(check.router)  # /check
api_router.include_router(entitlements.router)  # /entitlements/*
api_router.include_router(claim.router)  # /claim/*
api_router.include_router(checkout.router)  # /checkout
api_router.include_router(admin.router)  # /admin/*
api_router.include_router(utils.router)  # /utils/*
