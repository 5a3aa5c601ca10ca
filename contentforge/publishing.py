"""Blog platform (Shopify Admin REST) client and draft publishing.

- BlogPlatformClient: list blogs/articles and create articles. Every call
  carries the X-Shopify-Access-Token header; non-2xx answers raise
  UpstreamHTTPError and 204 answers return None.
- pick_default_blog: prefer a blog whose title mentions news or blog.
- publish_draft: push a reviewed blog_draft task to the platform and mark it
  completed with the created article id.
"""
import logging
from typing import Any, Dict, List, Optional

import requests
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from contentforge.config import settings
from contentforge.errors import ClaimLost, ConfigurationError, InvalidParameter, NotFound, UpstreamHTTPError
from contentforge.models import TaskStatus, TaskType, utcnow
from contentforge.repository import compare_and_set_status, get_task
from contentforge.schemas import BlogDraftData

logger = logging.getLogger(__name__)

PUBLISHABLE_STATUSES = (TaskStatus.PENDING_REVIEW, TaskStatus.PENDING)


class ArticleInput(BaseModel):
    title: str
    body_html: str
    tags: List[str] = Field(default_factory=list)
    author: Optional[str] = None
    published: bool = True
    summary_html: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        article: Dict[str, Any] = {
            "title": self.title,
            "body_html": self.body_html,
            "author": self.author or settings.SHOPIFY_DEFAULT_AUTHOR,
            "tags": ", ".join(self.tags),
            "published": self.published,
        }
        if self.summary_html:
            article["summary_html"] = self.summary_html
        return {"article": article}


class BlogPlatformClient:
    """Minimal Shopify Admin API client for blog content.

    Args:
        shop_domain: e.g. 'my-store.myshopify.com'; defaults to settings.
        access_token: Admin API access token; defaults to settings.
        api_version: Admin API version segment.
        http: requests.Session to send through (tests pass a mock).

    Raises:
        ConfigurationError: shop domain or access token missing.
    """

    def __init__(
        self,
        shop_domain: Optional[str] = None,
        access_token: Optional[str] = None,
        api_version: Optional[str] = None,
        http: Optional[requests.Session] = None,
        timeout: Optional[int] = None,
    ):
        self.shop_domain = shop_domain if shop_domain is not None else settings.SHOPIFY_SHOP_DOMAIN
        self.access_token = access_token if access_token is not None else settings.SHOPIFY_ACCESS_TOKEN
        if not self.shop_domain or not self.access_token:
            raise ConfigurationError("Shopify shop domain or access token is not configured.")
        self.api_version = api_version or settings.SHOPIFY_API_VERSION
        self.base_url = f"https://{self.shop_domain}/admin/api/{self.api_version}/"
        self.http = http or requests.Session()
        self.timeout = timeout or settings.SHOPIFY_TIMEOUT_SECONDS

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        url = self.base_url + path.lstrip("/")
        headers = {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        logger.info("Shopify %s %s", method, path)
        resp = self.http.request(method, url, headers=headers, json=payload, timeout=self.timeout)
        if not resp.ok:
            logger.error("Shopify API error %s for %s %s: %.500s", resp.status_code, method, path, resp.text)
            raise UpstreamHTTPError(resp.status_code, resp.text, getattr(resp, "reason", "") or "")
        if resp.status_code == 204:
            return None
        return resp.json()

    def list_blogs(self) -> List[Dict[str, Any]]:
        data = self._request("GET", "blogs.json") or {}
        return list(data.get("blogs", []))

    def list_articles(self, blog_id: int) -> List[Dict[str, Any]]:
        data = self._request("GET", f"blogs/{blog_id}/articles.json") or {}
        return list(data.get("articles", []))

    def create_article(self, blog_id: int, article: ArticleInput) -> Optional[Dict[str, Any]]:
        """Create an article in a blog and return the created article object."""
        data = self._request("POST", f"blogs/{blog_id}/articles.json", article.to_payload())
        return data.get("article") if data else None


def pick_default_blog(blogs: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Blog whose title contains 'news' or 'blog', else the first one."""
    for blog in blogs:
        title = (blog.get("title") or "").lower()
        if "news" in title or "blog" in title:
            return blog
    return blogs[0] if blogs else None


def publish_draft(
    db: Session,
    task_id: int,
    client: BlogPlatformClient,
    blog_id: Optional[int] = None,
    author: Optional[str] = None,
    published: bool = True,
) -> Dict[str, Any]:
    """Publish a blog_draft task and mark it completed.

    The draft is claimed (pending_review/pending -> in_progress) with a guarded
    update before the platform is called, so concurrent publishes of the same
    draft create one article. A failed platform call puts the draft back in
    its previous status.

    Blog choice: explicit blog_id, then the draft's suggested_blog_id, then
    pick_default_blog over the shop's blogs.

    Returns:
        dict: {"taskId", "blogId", "articleId"}.

    Raises:
        NotFound: unknown task, or the shop has no blogs.
        InvalidParameter: task is not a draft awaiting review or release, or
            another caller is already publishing it.
        UpstreamHTTPError: the platform rejected a call.
        ClaimLost: the draft was released while the article was being created.
    """
    task = get_task(db, task_id)
    if task is None:
        raise NotFound(f"Pipeline task {task_id} not found")
    if task.task_type != TaskType.BLOG_DRAFT:
        raise InvalidParameter(f"Task {task_id} is a '{task.task_type}' task, only blog drafts can be published")
    previous_status = task.status
    if previous_status not in PUBLISHABLE_STATUSES:
        raise InvalidParameter(f"Task {task_id} is '{previous_status}' and cannot be published")

    data = dict(task.data or {})
    draft = BlogDraftData.model_validate(data)

    # The draft is held in_progress while the article is created.
    if not compare_and_set_status(db, task_id, previous_status, TaskStatus.IN_PROGRESS, task_type=TaskType.BLOG_DRAFT):
        raise InvalidParameter(f"Task {task_id} is already being published or has changed state")

    try:
        target_blog = blog_id or draft.suggested_blog_id
        if target_blog is None:
            blog = pick_default_blog(client.list_blogs())
            if blog is None:
                raise NotFound("No blogs found in the Shopify store.")
            target_blog = int(blog["id"])

        article = client.create_article(
            target_blog,
            ArticleInput(
                title=draft.title,
                body_html=draft.body_html,
                tags=draft.tags,
                author=author,
                published=published,
                summary_html=draft.meta_description or None,
            ),
        )
    except Exception:
        compare_and_set_status(db, task_id, TaskStatus.IN_PROGRESS, previous_status)
        raise
    article_id = int(article["id"]) if article and article.get("id") is not None else None

    data["published_article_id"] = article_id
    now = utcnow()
    if not compare_and_set_status(
        db, task_id, TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, data=data, completed_at=now, error_message=None
    ):
        logger.error("Task %s was released while publishing; article %s already exists", task_id, article_id)
        raise ClaimLost(
            f"Task {task_id} is no longer in progress",
            details={"blogId": target_blog, "articleId": article_id},
        )
    logger.info("Published task %s to blog %s as article %s", task_id, target_blog, article_id)
    return {"taskId": task_id, "blogId": target_blog, "articleId": article_id}
