"""
会话作用域键构建模块 - 将 (userId, domain, category) 映射为 Redis 键。

【键格式】
    chat:<userId>::<domain>:<category>

    - domain 缺省为 "universal"，category 缺省为 "general"（各自独立缺省）
    - "::" 分隔用户与作用域，":" 分隔 domain 与 category
    - 该格式是线上兼容契约：通配清理依赖这两个分隔符来区分字段，不可随意修改
    - 因此 userId、domain、category 都不允许包含 ":"，否则 "u1::x" 这样的用户
      会落进 "u1" 的通配范围，清理时误删别人的会话

【通配模式】
    只知道部分作用域时，用 "*" 替代缺失的字段：

    | domain | category | 结果                           |
    |--------|----------|--------------------------------|
    | 有     | 有       | 精确键（点删除，不扫描）       |
    | 有     | 无       | chat:<userId>::<domain>:*      |
    | 无     | 有       | chat:<userId>::*:<category>    |
    | 无     | 无       | chat:<userId>::*               |
"""

KEY_PREFIX = "chat"
DEFAULT_DOMAIN = "universal"
DEFAULT_CATEGORY = "general"

# Redis glob 模式中的特殊字符
_GLOB_SPECIAL = "\\*?[]"

SEPARATOR = ":"


class ScopeError(ValueError):
    """作用域字段不合法（包含键分隔符）。"""


def check_scope(user_id: str, domain: str | None = None, category: str | None = None) -> None:
    """
    校验作用域字段，任何字段包含 ":" 时抛出 ScopeError。

    异常:
        ScopeError: 字段包含键分隔符
    """
    for name, value in (("userId", user_id), ("domain", domain), ("category", category)):
        if value and SEPARATOR in value:
            raise ScopeError(f'Field "{name}" must not contain "{SEPARATOR}"')


def build_key(user_id: str, domain: str | None = None, category: str | None = None) -> str:
    """
    构建会话存储键（纯函数，确定性输出）。

    参数:
        user_id: 用户标识
        domain: 领域，None 或空字符串时使用 "universal"
        category: 分类，None 或空字符串时使用 "general"

    返回:
        形如 "chat:u1::universal:general" 的键

    异常:
        ScopeError: 任一字段包含 ":"
    """
    check_scope(user_id, domain, category)
    return f"{KEY_PREFIX}:{user_id}::{domain or DEFAULT_DOMAIN}:{category or DEFAULT_CATEGORY}"


def is_full_scope(domain: str | None, category: str | None) -> bool:
    """domain 和 category 都给出时返回 True（可以直接点删除）。"""
    return bool(domain) and bool(category)


def escape_glob(value: str) -> str:
    """转义 Redis glob 特殊字符，避免用户 ID 中的 "*" 扩大匹配范围。"""
    return "".join(f"\\{ch}" if ch in _GLOB_SPECIAL else ch for ch in value)


def build_pattern(user_id: str, domain: str | None = None, category: str | None = None) -> str:
    """
    构建部分作用域的 SCAN 匹配模式。

    两个字段都给出时返回精确键（调用方应直接点删除，而不是扫描）。

    参数:
        user_id: 用户标识
        domain: 领域（可选）
        category: 分类（可选）

    返回:
        Redis MATCH 模式字符串
    """
    check_scope(user_id, domain, category)
    if is_full_scope(domain, category):
        return build_key(user_id, domain, category)

    prefix = f"{KEY_PREFIX}:{escape_glob(user_id)}::"
    if domain:
        return f"{prefix}{escape_glob(domain)}:*"
    if category:
        return f"{prefix}*:{escape_glob(category)}"
    return f"{prefix}*"
