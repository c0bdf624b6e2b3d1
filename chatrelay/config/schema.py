"""
配置数据模型定义 (config/schema.py)
=================================
本模块使用 Pydantic 定义 chatrelay 的完整配置结构。
所有配置项都有默认值，用户只需在 config.json 中覆盖需要修改的部分。

整体配置结构（树形）：
Config (根配置)
├── server   - HTTP 服务配置（监听地址、端口、X-API-KEY）
├── store    - 会话存储配置（Redis 地址、历史条数上限、SCAN 批大小）
└── model    - 生成模型配置（模型名、API Key、API Base、系统提示词等）

对于 Java 开发者：
- Pydantic 的 BaseModel 类似于 Java 的 POJO/Record，但自带字段验证和默认值
- BaseSettings 类似于 Spring 的 @ConfigurationProperties，额外支持从环境变量读取配置
"""

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# 默认系统提示词：每一轮对话都会作为 system 消息放在最前面
DEFAULT_SYSTEM_INSTRUCTION = (
    "You are a helpful chatbot. Always answer in a concise manner. "
    "Use a friendly, conversational tone. Never sound robotic. "
    "Use provided context (if any) and past conversation history to answer questions. "
    "Do not hallucinate or make up information. "
    "If you don't know the answer, say you don't know."
)


class ServerConfig(BaseModel):
    """HTTP 服务配置。api_key 为空时 serve 命令拒绝启动。"""
    host: str = "0.0.0.0"  # 监听地址（0.0.0.0 表示监听所有网卡）
    port: int = 3000  # 监听端口
    api_key: str = ""  # 客户端必须在 X-API-KEY 请求头中携带的密钥


class StoreConfig(BaseModel):
    """
    会话存储配置。

    max_messages 是每个会话保留的最大消息条数（用户 + 助手合计），
    每次追加后都会裁剪到最近的 N 条。N <= 0 表示不裁剪（历史无限增长，属于配置错误）。
    """
    redis_url: str = "redis://redis:6379"  # Redis 连接地址
    max_messages: int = 20  # 每个会话保留的最大消息数
    scan_count: int = Field(default=100, ge=1)  # 通配清理时每批 SCAN/DEL 的键数量


class ModelConfig(BaseModel):
    """
    生成模型配置。

    默认指向 Docker Model Runner 的 OpenAI 兼容端点，
    模型名带 "openai/" 前缀以便 LiteLLM 按 OpenAI 协议路由。
    """
    model: str = "openai/ai/qwen3:4B-UD-Q4_K_XL"  # LiteLLM 模型标识
    api_key: str = ""  # API 密钥（本地推理服务可留空）
    api_base: str | None = "http://model-runner.docker.internal/engines/v1"  # OpenAI 兼容端点
    max_tokens: int = 4096  # 单次生成的最大 token 数
    temperature: float = 0.7  # 采样温度
    system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION  # 固定系统提示词


class Config(BaseSettings):
    """
    chatrelay 根配置类。

    继承自 Pydantic 的 BaseSettings，除了支持从 JSON 文件加载外，
    还支持从环境变量读取配置：
    - 环境变量前缀: CHATRELAY_
    - 嵌套分隔符: __ (双下划线)
    - 示例: CHATRELAY_STORE__MAX_MESSAGES=50 可覆盖 store.max_messages
    """
    server: ServerConfig = Field(default_factory=ServerConfig)  # HTTP 服务配置
    store: StoreConfig = Field(default_factory=StoreConfig)  # 会话存储配置
    model: ModelConfig = Field(default_factory=ModelConfig)  # 生成模型配置

    # Pydantic Settings 配置：支持 CHATRELAY_ 前缀的环境变量，嵌套用 __ 分隔
    model_config = SettingsConfigDict(
        env_prefix="CHATRELAY_",
        env_nested_delimiter="__",
    )
