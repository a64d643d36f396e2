"""
API 路由聚合模块

- webhooks: 支付通道通知（Stripe / App Store）
- subscription: 订阅状态、收据校验、取消
- past_due: 逾期账单确认
- account: 账号注销与恢复
- jobs: 对账与宽限期清扫（供外部调度器调用）
- utils: 健康检查
"""
from fastapi import APIRouter

from renvo.api.routes import account, jobs, past_due, subscription, utils, webhooks

api_router = APIRouter()

api_router.include_router(webhooks.router)  # /webhooks/*
api_router.include_router(subscription.router)  # /subscription/*
api_router.include_router(past_due.router)  # /past-due/*
api_router.include_router(account.router)  # /account/*
api_router.include_router(jobs.router)  # /jobs/*
api_router.include_router(utils.router)  # /utils/*
