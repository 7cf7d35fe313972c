#!/usr/bin/env python3
"""
hide.me REST 控制通道 - 命令行入口

子命令:
    token     解析服务器并刷新访问令牌（写入配置的令牌文件）
    connect   解析服务器并用给定的 WireGuard 公钥建立会话，以 JSON 输出会话参数

退出码:
    0  成功
    1  失败
    2  需要升级应用程序（服务器返回 403）
"""

import argparse
import asyncio
import base64
import binascii
import json
import logging

import httpx

from .client import RestClient
from .config import Config, load_config
from .errors import AppUpdateRequiredError, RestError
from .logger import LoggerManager, add_context

logger = logging.getLogger('hideme-rest-cli')


def public_key_arg(value: str) -> bytes:
    """argparse 类型函数: base64 公钥 -> 字节"""
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise argparse.ArgumentTypeError(f"无效的 base64 公钥: {value}")


async def run_command(config: Config, args: argparse.Namespace) -> int:
    """
    执行子命令

    参数:
        config: 客户端配置
        args: 命令行参数
    """
    async with RestClient(config) as client:
        resolution = await client.resolve()
        add_context(remote=str(client.remote))
        logger.info(f"服务器端点: {client.remote} ({resolution.value})")

        if args.command == 'token':
            await client.get_access_token()
            return 0

        response = await client.connect(args.public_key)
        print(json.dumps(response.to_dict(), indent=2))
        return 0


def main(argv=None) -> int:
    """
    主函数 - 解析命令行参数并执行子命令

    命令行参数:
        --config, -c: 配置文件路径 (默认: config.yaml)
        --debug, -d: 启用调试模式
    """
    parser = argparse.ArgumentParser(description='hide.me REST 控制通道客户端')
    parser.add_argument('--config', '-c', default='config.yaml', help='配置文件路径')
    parser.add_argument('--debug', '-d', action='store_true', help='启用调试模式')
    subparsers = parser.add_subparsers(dest='command', required=True)
    subparsers.add_parser('token', help='刷新访问令牌')
    connect_parser = subparsers.add_parser('connect', help='建立会话')
    connect_parser.add_argument('public_key', type=public_key_arg, help='base64 编码的 WireGuard 公钥')
    args = parser.parse_args(argv)

    LoggerManager().initialize(config_file=args.config)
    if args.debug:
        root_logger = logging.getLogger()
        root_logger.setLevel(logging.DEBUG)
        for handler in root_logger.handlers:
            handler.setLevel(logging.DEBUG)

    logger.info(f"加载配置文件: {args.config}")
    try:
        config = Config.from_dict(load_config(args.config))
    except RestError as e:
        logger.error(f"配置错误: {e}")
        return 1
    if not config.host:
        logger.error("未配置服务器!")
        return 1
    add_context(host=config.host)

    try:
        return asyncio.run(run_command(config, args))
    except AppUpdateRequiredError:
        logger.error("服务器要求升级应用程序")
        return 2
    except (RestError, httpx.HTTPError, OSError) as e:
        logger.error(f"{args.command} 失败: {e!r}")
        return 1
    except KeyboardInterrupt:
        logger.info("收到键盘中断信号")
        return 0


if __name__ == '__main__':
    exit(main())
