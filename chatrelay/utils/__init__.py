"""
工具函数模块 - 提供 chatrelay 项目全局通用的辅助函数。

本模块包含：
- ensure_dir：确保目录存在
- get_data_path：获取本地数据目录
- truncate_string：日志预览用的字符串截断
"""

from chatrelay.utils.helpers import ensure_dir, get_data_path, truncate_string

__all__ = ["ensure_dir", "get_data_path", "truncate_string"]
