from typing import Dict

ERROR_CODE_MAP: Dict[str, Dict[str, str]] = {
    "INVALID_REQUEST": {
        "message": "缺少必要参数",
        "hint": "请检查 userId / term 等必填字段。",
    },
    "INVALID_TERM": {
        "message": "无效的订阅期限",
        "hint": "可选期限：7d、1m、1y、Lifetime。",
    },
    "TOKEN_DECODE_ERROR": {
        "message": "激活码格式错误",
        "hint": "请完整复制激活码，不要包含空格或换行。",
    },
    "SIGNATURE_MISMATCH": {
        "message": "签名校验失败",
        "hint": "回调参数被篡改或商户密钥配置不一致。",
    },
    "ORDER_NOT_FOUND": {
        "message": "订单不存在",
        "hint": "确认订单号是否正确，或重新发起支付。",
    },
    "GATEWAY_REJECTED": {
        "message": "支付网关拒绝请求",
        "hint": "请稍后重试，或检查商户号与金额配置。",
    },
    "GATEWAY_UNAVAILABLE": {
        "message": "支付网关暂不可用",
        "hint": "网关超时或网络异常，请稍后重试。",
    },
    "PAYMENT_VALIDATION_FAILED": {
        "message": "支付信息校验失败",
        "hint": "回调金额与订单金额不一致，请联系管理员核对。",
    },
    "TRIAL_ALREADY_USED": {
        "message": "试用资格已使用",
        "hint": "每个账号仅可领取一次 7 天试用。",
    },
    "RATE_LIMITED": {
        "message": "系统繁忙，请稍后再试 (Too Many Requests)",
        "hint": "请求过于频繁，请在一分钟后重试。",
    },
    "UNAUTHORIZED": {
        "message": "无权限",
        "hint": "管理员令牌错误或未配置 ADMIN_TOKEN。",
    },
    "CONFIGURATION_ERROR": {
        "message": "服务配置缺失",
        "hint": "检查 LICENSE_PRIVATE_KEY、GATEWAY_* 与价格配置。",
    },
    "INTERNAL_SERVER_ERROR": {
        "message": "服务器内部错误",
        "hint": "携带 trace_id 联系管理员排查。",
    },
}


def explain_error(code: str | None) -> Dict[str, str] | None:
    if not code:
        return None
    return ERROR_CODE_MAP.get(code)
