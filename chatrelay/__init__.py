"""
chatrelay - 对话轮次编排核心

模块概述：
    本文件是 chatrelay 包的入口文件（__init__.py），定义了包的元信息。
    chatrelay 负责一次"对话轮次"（用户一句话 + 模型一段回复）的完整编排：

    - 会话记忆：按 (userId, domain, category) 作用域存放在 Redis 列表中，
      每次追加时原子地完成"写入 + 裁剪 + 续期"
    - 轮次编排：读取历史、写入用户消息、调用模型三者并发协作，尽量不增加延迟
    - 流式中继：逐块转发模型输出，同时在后台持久化完整回复
"""

# 版本号，遵循语义化版本规范（主版本.次版本.修订号）
__version__ = "0.1.0"

# 项目 logo 表情符号，用于 CLI 输出等场景的品牌标识
__logo__ = "💬"
