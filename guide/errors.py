"""异常定义"""


class GuideError(Exception):
    """引导引擎的基础异常"""


class PageUnreachableError(GuideError):
    """页面观察器无法返回快照（页面未加载、脚本执行失败等）"""


class RestrictedPageError(PageUnreachableError):
    """浏览器内部页面，不允许注入脚本"""

    def __init__(self, url: str):
        super().__init__(f"restricted page: {url or '(no url)'}")
        self.url = url
