"""
@description 外部请求异常定义
@responsibility 区分限流、索引站错误和 AniDB 错误，供任务队列记录失败原因
"""


class FetchError(Exception):
    """外部站点请求失败的基类"""


class RateLimitError(FetchError):
    """429 重试次数耗尽"""


class IndexerError(FetchError):
    """索引站返回了非成功状态码"""

    def __init__(self, status_code: int, url: str):
        super().__init__(f"索引站请求失败: HTTP {status_code} ({url})")
        self.status_code = status_code
        self.url = url


class AnidbError(FetchError):
    """AniDB 请求或登录失败"""
