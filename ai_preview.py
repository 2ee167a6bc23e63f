#!/usr/bin/env python3
"""
Preview/apply workflow for AI image generation inside an editor panel.

The host document is duck-typed: anything exposing has_document(),
document_name(), document_width(), document_height(), document_resolution(),
layer_count(), layer_names(), modal_scope(command_name) and create_layer(name)
can drive the workflow. Numeric getters return None when the host does not
support them and raise when the host call fails.
"""

import asyncio
import math
import re
from dataclasses import dataclass
from urllib.parse import quote, unquote

import inkex
from lxml import etree


MODEL_LABELS = {
    'qwen': 'Qwen (Alibaba)',
    'nano-banana': 'Google Nano Banana',
    'grok': 'xAI Grok',
    'meta': 'Meta AI'
}

WORKFLOW_LABELS = {
    'generate': 'Generate new artwork',
    'edit': 'Edit current selection',
    'expand': 'Outpaint beyond canvas'
}

# Workflow states
IDLE = 'idle'
GENERATING = 'generating'
PREVIEW_READY = 'preview-ready'
APPLYING = 'applying'

# Status kinds
STATUS_IDLE = 'idle'
STATUS_PENDING = 'pending'
STATUS_SUCCESS = 'success'
STATUS_WARNING = 'warning'
STATUS_ERROR = 'error'

# Commands
GENERATE = 'generate'
APPLY = 'apply'
REFRESH = 'refresh'

# Host value statuses
OK = 'ok'
UNSUPPORTED = 'unsupported'
FAILED = 'failed'

EMPTY_PROMPT_MESSAGE = 'Please enter a prompt before generating a preview.'
PLACEHOLDER_TEXT = 'Preview will appear here.'
APPLY_COMMAND_NAME = 'AI Placeholder Layer'
SVG_NS = 'http://www.w3.org/2000/svg'
XHTML_NS = 'http://www.w3.org/1999/xhtml'


def model_label(model, fallback='Custom model'):
    return MODEL_LABELS.get(model, fallback)


def workflow_label(workflow, fallback='Workflow'):
    return WORKFLOW_LABELS.get(workflow, fallback)


# ==================== Session Values ====================

@dataclass(frozen=True)
class ConfigSnapshot:
    """Form state captured when Generate is invoked."""
    prompt: str
    model: str
    workflow: str
    strength: int
    preserve_subject: bool = False
    respect_mask: bool = False

    def __post_init__(self):
        if not isinstance(self.prompt, str) or not self.prompt.strip():
            raise ValueError(EMPTY_PROMPT_MESSAGE)
        if isinstance(self.strength, bool) or not isinstance(self.strength, int):
            raise ValueError(f"Strength must be a whole number, got {self.strength!r}.")
        if not 0 <= self.strength <= 100:
            raise ValueError(f"Strength must be between 0 and 100, got {self.strength}.")


@dataclass
class PanelForm:
    """Mutable form inputs, as the panel widgets hold them."""
    prompt: str = ''
    model: str = 'qwen'
    workflow: str = 'generate'
    strength: int = 50
    preserve_subject: bool = False
    respect_mask: bool = False

    def snapshot(self):
        """Freeze the current inputs; raises ValueError when they are not generatable."""
        prompt = self.prompt.strip() if isinstance(self.prompt, str) else self.prompt
        return ConfigSnapshot(
            prompt=prompt,
            model=self.model,
            workflow=self.workflow,
            strength=self.strength,
            preserve_subject=bool(self.preserve_subject),
            respect_mask=bool(self.respect_mask)
        )


@dataclass(frozen=True)
class HostValue:
    """A single document field and how the host answered for it."""
    value: object = None
    status: str = UNSUPPORTED
    error: str = ''

    @property
    def available(self):
        return self.status == OK

    def get(self, default=None):
        return self.value if self.status == OK else default


@dataclass(frozen=True)
class DocumentSummary:
    name: str
    width_px: HostValue = HostValue()
    height_px: HostValue = HostValue()
    resolution: HostValue = HostValue()
    layer_count: HostValue = HostValue()


@dataclass(frozen=True)
class PreviewRecord:
    url: str
    config: ConfigSnapshot
    document_summary: object = None


@dataclass(frozen=True)
class ApplyResult:
    ok: bool
    layer_name: str = ''
    error: str = ''


def round_half_up(value):
    # round() would send 1022.5 to 1022
    return math.floor(value + 0.5)


def format_document_summary(summary):
    """Render the four-line document readout shown in the panel."""
    width = summary.width_px.get()
    height = summary.height_px.get()
    layers = summary.layer_count.get()
    resolution = summary.resolution.get()

    width_text = f"{round_half_up(width)} px" if width else 'Unknown width'
    height_text = f"{round_half_up(height)} px" if height else 'Unknown height'
    layers_text = f"{layers} layers" if layers is not None else 'Layer count unavailable'
    resolution_text = f"{resolution:g} ppi" if resolution else 'Resolution unknown'

    return f"{summary.name}\n{width_text} × {height_text}\n{layers_text}\n{resolution_text}"


# ==================== Document Inspector ====================

class DocumentInspector:
    """Read-only view of the host's active document."""

    def __init__(self, host):
        self.host = host

    async def fetch_summary(self):
        """
        Return a DocumentSummary, or None when no document is open.

        The existence check and name lookup are allowed to raise; every
        numeric field is queried separately and degrades on its own.
        """
        if not self.host.has_document():
            return None

        name = self.host.document_name() or 'Untitled'

        return DocumentSummary(
            name=name,
            width_px=self._probe('width', self.host.document_width, self._positive_number),
            height_px=self._probe('height', self.host.document_height, self._positive_number),
            resolution=self._probe('resolution', self.host.document_resolution, self._positive_number),
            layer_count=self._probe('layer count', self.host.layer_count, self._layer_count)
        )

    def _probe(self, label, query, convert):
        try:
            raw = query()
        except Exception as e:
            inkex.errormsg(f"Warning: Could not read document {label}: {e}")
            return HostValue(status=FAILED, error=str(e))

        if raw is None:
            return HostValue(status=UNSUPPORTED)

        value = convert(raw)
        if value is None:
            return HostValue(status=UNSUPPORTED)
        return HostValue(value=value, status=OK)

    @staticmethod
    def _positive_number(raw):
        try:
            value = float(raw)
        except (TypeError, ValueError):
            return None
        return value if value > 0 else None

    @staticmethod
    def _layer_count(raw):
        if isinstance(raw, bool) or not isinstance(raw, int) or raw < 0:
            return None
        return raw


# ==================== Preview Generator ====================

# Characters XML 1.0 cannot carry, not even as character references
XML_ILLEGAL = re.compile('[\x00-\x08\x0b\x0c\x0e-\x1f\ud800-\udfff\ufffe\uffff]')


def escape_markup(text):
    """
    Escape text for embedding inside SVG/XHTML markup.

    Carriage returns become character references so parsers do not fold
    them into newlines; characters XML cannot represent become U+FFFD.
    """
    text = XML_ILLEGAL.sub('\ufffd', text)
    return (text
            .replace('&', '&amp;')
            .replace('<', '&lt;')
            .replace('>', '&gt;')
            .replace('"', '&quot;')
            .replace("'", '&#039;')
            .replace('\r', '&#13;'))


def encode_uri_component(text):
    # Only unreserved characters plus ! and * stay literal; quotes and parentheses are escaped
    return quote(text, safe='!*~')


def decode_preview(url):
    """Return the SVG document embedded in a preview data URI."""
    header, _, encoded = url.partition(',')
    if header != 'data:image/svg+xml':
        raise ValueError(f"Not an SVG preview reference: {header[:40]}")
    return unquote(encoded)


def preview_text(url):
    """Parse a preview data URI and return the unescaped summary text."""
    root = etree.fromstring(decode_preview(url).encode('utf-8'))
    pre = root.find(f'.//{{{XHTML_NS}}}pre')
    if pre is None:
        raise ValueError('Preview does not contain a summary block')
    return pre.text or ''


class PreviewGenerator:
    """Stands in for a provider call: renders the request as an SVG card."""

    WIDTH = 800
    HEIGHT = 600

    def __init__(self, latency=0.5):
        self.latency = latency

    def describe(self, config, summary_text):
        return (
            f"Model: {model_label(config.model)}\n"
            f"Workflow: {workflow_label(config.workflow)}\n"
            f"Strength: {config.strength}%\n"
            f"Preserve Subject: {'Yes' if config.preserve_subject else 'No'}\n"
            f"Respect Mask: {'Yes' if config.respect_mask else 'No'}\n"
            f"Prompt: {config.prompt}\n"
            f"{summary_text}"
        )

    def render_svg(self, text):
        width, height = self.WIDTH, self.HEIGHT
        return (
            f"<svg xmlns='{SVG_NS}' width='{width}' height='{height}'>\n"
            f"  <defs>\n"
            f"    <linearGradient id='bg' x1='0%' y1='0%' x2='100%' y2='100%'>\n"
            f"      <stop offset='0%' stop-color='#1473E6'/>\n"
            f"      <stop offset='100%' stop-color='#5C6BC0'/>\n"
            f"    </linearGradient>\n"
            f"  </defs>\n"
            f"  <rect width='{width}' height='{height}' rx='32' fill='url(#bg)' />\n"
            f"  <foreignObject x='32' y='32' width='{width - 64}' height='{height - 64}'>\n"
            f"    <body xmlns='{XHTML_NS}' style='color:white;font-family:Arial,Helvetica,sans-serif;'>\n"
            f"      <h2 style='margin:0 0 12px 0;'>AI Preview</h2>\n"
            f"      <pre style='white-space:pre-wrap;font-size:20px;line-height:1.4;'>{escape_markup(text)}</pre>\n"
            f"    </body>\n"
            f"  </foreignObject>\n"
            f"</svg>"
        )

    async def generate(self, config, summary_text=''):
        """Return a data URI for the preview after the simulated provider latency."""
        svg = self.render_svg(self.describe(config, summary_text))
        await asyncio.sleep(self.latency)
        return f"data:image/svg+xml,{encode_uri_component(svg)}"


# ==================== Apply Handler ====================

def unique_layer_name(base, existing):
    names = set(existing)
    if base not in names:
        return base
    index = 2
    while f"{base} ({index})" in names:
        index += 1
    return f"{base} ({index})"


class ApplyHandler:
    """Writes a placeholder layer for a held preview into the host document."""

    def __init__(self, host):
        self.host = host

    def layer_base_name(self, record):
        config = record.config
        return f"{model_label(config.model, 'AI')} • {workflow_label(config.workflow)}"

    async def apply(self, record):
        try:
            if not self.host.has_document():
                return ApplyResult(False, error='No document is open.')

            with self.host.modal_scope(APPLY_COMMAND_NAME):
                name = unique_layer_name(self.layer_base_name(record), self.host.layer_names())
                self.host.create_layer(name)
        except Exception as e:
            inkex.errormsg(f"Failed to create placeholder layer: {e}")
            return ApplyResult(False, error=str(e))

        return ApplyResult(True, layer_name=name)


# ==================== Workflow Controller ====================

class WorkflowController:
    """
    Drives generate/apply/refresh for one panel session.

    Owns the only mutable session value, the last successful PreviewRecord.
    Only one command runs at a time; while generating or applying, every
    other command is rejected.
    """

    def __init__(self, host, generator=None, inspector=None, apply_handler=None):
        self.host = host
        self.generator = generator or PreviewGenerator()
        self.inspector = inspector or DocumentInspector(host)
        self.apply_handler = apply_handler or ApplyHandler(host)

        self.state = IDLE
        self.status = (STATUS_IDLE, '')
        self.processing = False
        self.document_summary = None
        self.document_info = ''
        self.placeholder_text = PLACEHOLDER_TEXT

        self._preview = None
        self._preview_stale = False

    # ---- observable panel state ----

    @property
    def preview(self):
        return self._preview

    @property
    def preview_stale(self):
        return self._preview_stale

    @property
    def busy(self):
        return self.state in (GENERATING, APPLYING)

    @property
    def can_generate(self):
        return not self.busy

    @property
    def can_refresh(self):
        return not self.busy

    @property
    def can_apply(self):
        return not self.busy and self._preview is not None and not self._preview_stale

    @property
    def preview_url(self):
        """URL to display, or None while the placeholder is shown."""
        if self._preview is None or self._preview_stale or self.state == GENERATING:
            return None
        return self._preview.url

    def set_status(self, kind, message):
        self.status = (kind, message)

    # ---- commands ----

    async def dispatch(self, command, form=None):
        """Route one UI action; returns True when the command was carried out."""
        if command == GENERATE:
            return await self.generate(form)
        if command == APPLY:
            return await self.apply()
        if command == REFRESH:
            return await self.refresh()
        raise ValueError(f"Unknown command: {command}")

    async def generate(self, form):
        if self.busy:
            return False

        try:
            config = form.snapshot()
        except ValueError as e:
            self.set_status(STATUS_WARNING, str(e))
            return False

        self.state = GENERATING
        self.processing = True
        self.set_status(STATUS_PENDING, 'Contacting AI service...')
        self.placeholder_text = 'Generating preview...'

        tasks = [
            asyncio.create_task(self.inspector.fetch_summary()),
            asyncio.create_task(self.generator.generate(config, self.document_info))
        ]
        try:
            summary, url = await asyncio.gather(*tasks)
        except Exception as e:
            for task in tasks:
                task.cancel()
            inkex.errormsg(f"Preview generation failed: {e}")
            if self._preview is not None:
                self._preview_stale = True
            self.placeholder_text = PLACEHOLDER_TEXT
            self.set_status(STATUS_ERROR, f"Preview failed: {e}")
            self.state = IDLE
            return False
        finally:
            self.processing = False

        self._preview = PreviewRecord(url=url, config=config, document_summary=summary)
        self._preview_stale = False
        self.state = PREVIEW_READY
        self.set_status(STATUS_SUCCESS, 'Preview generated. Apply to insert a placeholder layer.')
        return True

    async def apply(self):
        if self.busy:
            return False

        if self._preview is None:
            self.set_status(STATUS_WARNING, 'Generate a preview before applying.')
            return False

        if self._preview_stale:
            self.set_status(STATUS_WARNING, 'The last preview failed to regenerate. Generate again before applying.')
            return False

        try:
            has_document = self.host.has_document()
        except Exception as e:
            inkex.errormsg(f"Warning: Could not check for an open document: {e}")
            has_document = False

        if not has_document:
            self.set_status(STATUS_WARNING, 'Open a document to apply the AI result.')
            return False

        self.state = APPLYING
        self.processing = True
        self.set_status(STATUS_PENDING, 'Creating placeholder layer...')

        try:
            result = await self.apply_handler.apply(self._preview)
            if result.ok:
                self.set_status(
                    STATUS_SUCCESS,
                    f"Placeholder layer '{result.layer_name}' created. "
                    f"Replace its contents with the generated pixels from your service."
                )
            else:
                self.set_status(STATUS_ERROR, f"Could not apply result: {result.error}")
        finally:
            self.processing = False
            summary = await self._refresh_document_info()
            self.state = PREVIEW_READY if summary is not None else IDLE

        return result.ok

    async def refresh(self):
        if self.busy:
            return False
        await self._refresh_document_info()
        return True

    async def _refresh_document_info(self):
        try:
            summary = await self.inspector.fetch_summary()
        except Exception as e:
            inkex.errormsg(f"Failed to fetch document info: {e}")
            self.document_summary = None
            self.document_info = f"Error loading document info: {e}"
            return None

        self.document_summary = summary
        self.document_info = format_document_summary(summary) if summary else 'No document detected.'
        return summary
