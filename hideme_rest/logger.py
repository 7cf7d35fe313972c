"""
控制通道客户端 - 日志管理模块

功能概述:
1. 控制台输出（终端下彩色显示级别）
2. 可选的文件输出，支持按大小或按日期轮转
3. 上下文字段（服务器主机、远端地址）附加到每条日志
4. 从配置文件 logging: 段或环境变量加载配置

配置示例:

    logging:
      level: DEBUG
      enable_file: true
      log_dir: /var/log/hideme-rest
      rotation_type: size
"""

import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import yaml

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(context)s] - %(message)s"


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() == 'true'


@dataclass
class LogConfig:
    """
    日志配置数据类

    Attributes:
        level: 日志级别
        log_dir: 日志目录
        log_file: 日志文件名
        max_bytes: 单个日志文件最大大小（字节）
        backup_count: 保留的备份文件数量
        rotation_type: 轮转类型（size, date, none）
        format_string: 日志格式字符串
        enable_console: 是否输出到控制台
        enable_file: 是否输出到文件
        context_fields: 上下文字段列表
    """
    level: str = "INFO"
    log_dir: str = "logs"
    log_file: str = "hideme-rest.log"
    max_bytes: int = 5 * 1024 * 1024
    backup_count: int = 5
    rotation_type: str = "size"
    format_string: str = DEFAULT_FORMAT
    enable_console: bool = True
    enable_file: bool = False
    context_fields: List[str] = field(default_factory=lambda: ["host", "remote"])

    @classmethod
    def from_env(cls, section: Optional[dict] = None) -> 'LogConfig':
        """用配置段作为默认值，环境变量优先"""
        section = section or {}
        defaults = cls()
        return cls(
            level=os.getenv('LOG_LEVEL', section.get('level', defaults.level)),
            log_dir=os.getenv('LOG_DIR', section.get('log_dir', defaults.log_dir)),
            log_file=os.getenv('LOG_FILE', section.get('log_file', defaults.log_file)),
            max_bytes=int(os.getenv('LOG_MAX_BYTES', section.get('max_bytes', defaults.max_bytes))),
            backup_count=int(os.getenv('LOG_BACKUP_COUNT', section.get('backup_count', defaults.backup_count))),
            rotation_type=os.getenv('LOG_ROTATION_TYPE', section.get('rotation_type', defaults.rotation_type)),
            format_string=os.getenv('LOG_FORMAT', section.get('format_string', defaults.format_string)),
            enable_console=_env_bool('LOG_ENABLE_CONSOLE', section.get('enable_console', defaults.enable_console)),
            enable_file=_env_bool('LOG_ENABLE_FILE', section.get('enable_file', defaults.enable_file)),
            context_fields=section.get('context_fields', defaults.context_fields),
        )


class ContextFilter(logging.Filter):
    """为日志记录添加上下文信息"""

    def __init__(self, context_fields: Optional[List[str]] = None):
        super().__init__()
        self.context_fields = context_fields or []
        self.context_data = {}

    def add_context(self, **kwargs):
        self.context_data.update(kwargs)

    def clear_context(self):
        self.context_data.clear()

    def filter(self, record):
        record.context = " | ".join(
            f"{name}={self.context_data.get(name, '-')}" for name in self.context_fields
        )
        return True


class LogFormatter(logging.Formatter):
    """
    自定义日志格式化器

    终端输出时按级别着色
    """

    COLORS = {
        'DEBUG': '\033[36m',      # 青色
        'INFO': '\033[32m',       # 绿色
        'WARNING': '\033[33m',    # 黄色
        'ERROR': '\033[31m',      # 红色
        'CRITICAL': '\033[35m',   # 紫色
    }
    RESET = '\033[0m'

    def __init__(self, fmt=None, datefmt=None, use_color=False):
        super().__init__(fmt, datefmt)
        self.use_color = use_color

    def format(self, record):
        if not hasattr(record, 'context'):
            record.context = "-"
        levelname = record.levelname
        if self.use_color and levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


class LoggerManager:
    """
    日志管理器（单例）

    管理根日志记录器的处理器和上下文过滤器
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance.config = None
            cls._instance.context_filter = None
        return cls._instance

    def load_config_from_file(self, config_file: str) -> LogConfig:
        """
        从配置文件的 logging: 段加载日志配置

        文件不存在或无法解析时只使用环境变量
        """
        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            return LogConfig.from_env()
        except yaml.YAMLError as e:
            print(f"加载日志配置失败: {e}，使用环境变量配置", file=sys.stderr)
            return LogConfig.from_env()
        section = data.get('logging') if isinstance(data, dict) else None
        return LogConfig.from_env(section if isinstance(section, dict) else None)

    def initialize(self, config: Optional[LogConfig] = None, config_file: Optional[str] = None):
        """
        初始化日志系统

        Args:
            config: 日志配置对象（可选）
            config_file: 配置文件路径（可选）
        """
        if config:
            self.config = config
        elif config_file:
            self.config = self.load_config_from_file(config_file)
        else:
            self.config = LogConfig.from_env()

        level = getattr(logging, self.config.level.upper(), logging.INFO)
        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()

        if self.config.enable_console:
            self._add_handler(root_logger, logging.StreamHandler(sys.stdout), sys.stdout.isatty())
        if self.config.enable_file:
            self._add_handler(root_logger, self._file_handler(), False)

        self.context_filter = ContextFilter(self.config.context_fields)
        # 过滤器挂在处理器上，子记录器的日志也能带上上下文
        for handler in root_logger.handlers:
            handler.addFilter(self.context_filter)

    def _add_handler(self, logger: logging.Logger, handler: logging.Handler, use_color: bool):
        handler.setLevel(getattr(logging, self.config.level.upper(), logging.INFO))
        handler.setFormatter(LogFormatter(
            fmt=self.config.format_string,
            datefmt='%Y-%m-%d %H:%M:%S',
            use_color=use_color
        ))
        logger.addHandler(handler)

    def _file_handler(self) -> logging.Handler:
        """创建文件处理器（支持轮转）"""
        log_dir = Path(self.config.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file_path = log_dir / self.config.log_file

        if self.config.rotation_type == 'size':
            return logging.handlers.RotatingFileHandler(
                filename=log_file_path,
                maxBytes=self.config.max_bytes,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        if self.config.rotation_type == 'date':
            return logging.handlers.TimedRotatingFileHandler(
                filename=log_file_path,
                when='midnight',
                interval=1,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        return logging.FileHandler(filename=log_file_path, encoding='utf-8')

    def add_context(self, **kwargs):
        if self.context_filter:
            self.context_filter.add_context(**kwargs)

    def clear_context(self):
        if self.context_filter:
            self.context_filter.clear_context()


def add_context(**kwargs):
    """添加上下文信息（便捷函数）"""
    LoggerManager().add_context(**kwargs)


def clear_context():
    """清除上下文信息（便捷函数）"""
    LoggerManager().clear_context()
