#!/usr/bin/env python3
"""
Commentary generation stage.

Selects records that have no commentary yet (newest first), asks the
text-generation service for a short commentary on each and stores the
result. Every successful record consumes one unit of the daily quota; a
failed record consumes nothing. Quota exhaustion, before or during a
batch, ends the stage early and is not an error.
"""

import re
from asyncio import sleep
from typing import Any, Callable, Dict, List, Optional

import yaml

from config import config, get_logger
from errors import CommentaryError, ContentFilterError
from llm_client import chat_completion as ai_chat_completion
from models import DatabaseQueue
from quota import QuotaTracker
from telemetry import get_tracer, init_telemetry, trace_span
from utils import extract_domain

# Module-specific logger
logger = get_logger("summarizer")
init_telemetry("feed-commentary-summarize")
_tracer = get_tracer("summarizer")

DEFAULT_PROMPT = (
    "Write a short, sharp commentary on this headline. Do not invent facts beyond it.\n"
    "End with a final line: Source: <url>\n\n"
    "Headline: {title}\nLink: {url}"
)
COMMENTARY_TEMPERATURE = 0.6
RETRY_TEMPERATURE = 0.5
COMMENTARY_MAX_TOKENS = 280

SOURCE_LINE_PATTERN = re.compile(r"(^|\n)\s*Source:", re.IGNORECASE)
SOURCE_URL_PATTERN = re.compile(r"Source:\s*<?(https?://[^\s>]+)>?", re.IGNORECASE)
RAW_URL_PATTERN = re.compile(r"<?https?://[^\s>]+>?", re.IGNORECASE)
MARKDOWN_LINK_PATTERN = re.compile(r"\[([^\]]+)\]\(https?://[^)]+\)", re.IGNORECASE)


def _mask_secret(value: Optional[str], show: int = 4) -> str:
    """Mask a secret value for safe logging (keep only first/last few chars)."""
    if not value:
        return "<missing>"
    v = str(value)
    if len(v) <= show * 2:
        return "*" * len(v)
    return f"{v[:show]}***{v[-show:]}"


def validate_configuration() -> List[str]:
    """Return the list of problems that prevent commentary generation."""
    errors = []
    if not config.OPENAI_API_KEY or not config.OPENAI_API_KEY.strip():
        errors.append("OPENAI_API_KEY environment variable not set")
    if config.AZURE_ENDPOINT:
        if not config.DEPLOYMENT_NAME:
            errors.append("DEPLOYMENT_NAME must be set when AZURE_ENDPOINT is used")
        if not config.OPENAI_API_VERSION:
            errors.append("OPENAI_API_VERSION must be set when AZURE_ENDPOINT is used")
    if not errors:
        logger.info(
            "Text generation config: endpoint=%s, model=%s, key=%s",
            config.AZURE_ENDPOINT or "api.openai.com",
            config.DEPLOYMENT_NAME if config.AZURE_ENDPOINT else config.OPENAI_MODEL,
            _mask_secret(config.OPENAI_API_KEY),
        )
    return errors


def load_prompts() -> Dict[str, str]:
    """Load prompts from prompt.yaml configuration file."""
    try:
        with open(config.PROMPT_CONFIG_PATH, 'r', encoding='utf-8') as f:
            prompts = yaml.safe_load(f)
        return prompts if isinstance(prompts, dict) else {}
    except FileNotFoundError:
        logger.error(f"Prompt configuration file not found at {config.PROMPT_CONFIG_PATH}")
        return {}
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in prompt configuration file: {e}")
        return {}
    except OSError as e:
        logger.error(f"OS error reading prompt configuration file: {e}")
        return {}


def strip_source_links(text: str, url: Optional[str] = None) -> str:
    """Replace raw links in generated text with the bare source domain.

    ``Source: https://host/path`` becomes ``Source: host``; any other URL is
    reduced to its host as well.
    """
    if not text:
        return ""
    fallback = extract_domain(url)

    def _host(match) -> str:
        return extract_domain(match.group(1).strip("<>")) or fallback

    out = SOURCE_URL_PATTERN.sub(lambda m: f"Source: {_host(m)}".rstrip(), text)
    out = MARKDOWN_LINK_PATTERN.sub(lambda m: m.group(1), out)
    out = RAW_URL_PATTERN.sub(lambda m: extract_domain(m.group(0).strip("<>")) or fallback, out)
    return out.strip()


class CommentaryClient:
    """Text-generation collaborator: headline + link in, commentary out."""

    def __init__(self, prompts: Optional[Dict[str, str]] = None, client_override: Optional[Any] = None):
        self.prompts = prompts if prompts is not None else load_prompts()
        self.client_override = client_override

    def build_prompt(self, title: str, url: str) -> str:
        template = self.prompts.get('commentary') or DEFAULT_PROMPT
        return template.format(title=title, url=url).strip()

    async def _complete(self, prompt: str, url: str, temperature: float) -> Optional[str]:
        return await ai_chat_completion(
            [{"role": "user", "content": prompt}],
            purpose="commentary",
            postprocess=lambda raw: strip_source_links(raw, url),
            client_override=self.client_override,
            temperature=temperature,
            max_tokens=COMMENTARY_MAX_TOKENS,
        )

    @trace_span("generate_commentary", tracer_name="summarizer")
    async def generate(self, title: str, url: str) -> str:
        """Return commentary for one record.

        Raises:
            CommentaryError: nothing usable came back
            ContentFilterError: the provider refused the content
        """
        prompt = self.build_prompt(title, url)
        text = await self._complete(prompt, url, COMMENTARY_TEMPERATURE)
        if text and not SOURCE_LINE_PATTERN.search(text):
            reminder = self.prompts.get('source_reminder') or "DO NOT OMIT THE FINAL 'Source:' LINE."
            retry_text = await self._complete(f"{prompt}\n\n{reminder.strip()}", url, RETRY_TEMPERATURE)
            if retry_text:
                text = retry_text
        if not text or not text.strip():
            raise CommentaryError(f"No commentary returned for {url}")
        return text.strip()


class CommentaryProcessor:
    """Summarize stage: select, generate, persist, consume quota."""

    def __init__(
        self,
        db: Optional[DatabaseQueue] = None,
        quota: Optional[QuotaTracker] = None,
        generator: Optional[CommentaryClient] = None,
        sleep_func: Callable = sleep,
    ):
        self.db = db
        self._owns_db = db is None
        self.quota = quota or QuotaTracker()
        self.generator = generator or CommentaryClient()
        self._sleep = sleep_func

    async def initialize(self):
        """Initialize the processor with database connection."""
        if self.db is None:
            self.db = DatabaseQueue(config.DATABASE_PATH)
        await self.db.start()
        logger.info("CommentaryProcessor initialized")

    async def close(self):
        """Close connections and clean up resources."""
        if self.db and self._owns_db:
            await self.db.stop()

    @trace_span(
        "process_batch",
        tracer_name="summarizer",
        attr_from_args=lambda self, batch_limit=None, daily_cap=None, cooldown=None: {
            "summary.batch_limit": config.SUMMARY_BATCH_LIMIT if batch_limit is None else int(batch_limit),
            "summary.daily_cap": config.SUMMARY_DAILY_CAP if daily_cap is None else int(daily_cap),
        },
    )
    async def process_batch(self, batch_limit: Optional[int] = None, daily_cap: Optional[int] = None, cooldown: Optional[float] = None) -> int:
        """Summarize up to ``batch_limit`` records; returns how many succeeded."""
        batch_limit = config.SUMMARY_BATCH_LIMIT if batch_limit is None else int(batch_limit)
        daily_cap = config.SUMMARY_DAILY_CAP if daily_cap is None else int(daily_cap)
        cooldown = config.SUMMARY_COOLDOWN_SECONDS if cooldown is None else cooldown

        state = self.quota.get_state()
        logger.info(f"Daily commentary used: {state['count']}/{daily_cap} (state: {self.quota.state_path})")
        if not self.quota.can_consume(daily_cap):
            logger.info("Daily cap reached. 0 processed.")
            return 0

        rows = await self.db.execute('select_unsummarized', limit=batch_limit)
        if not rows:
            logger.info("No records awaiting commentary.")
            return 0

        done = 0
        for index, row in enumerate(rows):
            if not self.quota.can_consume(daily_cap):
                logger.info("Daily cap reached mid-batch. Stopping.")
                break

            logger.info(f"Generating commentary: {row['title']}")
            try:
                text = await self.generator.generate(row['title'], row['url'])
            except ContentFilterError as e:
                logger.warning(f"Commentary blocked by content filter for record {row['id']}: {e}")
            except CommentaryError as e:
                logger.error(f"Commentary failed for record {row['id']}: {e}")
            else:
                if await self.db.execute('save_commentary', article_id=row['id'], commentary=text):
                    used = self.quota.record_use(daily_cap)
                    done += 1
                    logger.info(f"Saved commentary for record {row['id']} ({used}/{daily_cap} used today)")
                else:
                    logger.warning(f"Record {row['id']} already has commentary; not counted")

            if cooldown and index < len(rows) - 1:
                await self._sleep(cooldown)

        logger.info(f"Commentary stage done. {done} records processed.")
        return done


@trace_span("summarize.single_run", tracer_name="summarizer")
async def main_async_single_run() -> int:
    """Run the summarize stage once and return the processed count."""
    problems = validate_configuration()
    if problems:
        for problem in problems:
            logger.error(problem)
        raise CommentaryError("Text generation is not configured")
    processor = CommentaryProcessor()
    try:
        await processor.initialize()
        return await processor.process_batch()
    finally:
        await processor.close()
