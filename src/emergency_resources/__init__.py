"""应急资源调派服务。"""

__version__ = "0.1.0"
