#!/usr/bin/env python3
"""
Inkscape extension that previews AI image requests and applies them as
placeholder layers. Models: Qwen, Google Nano Banana, xAI Grok, Meta AI.
"""

import asyncio
import json
import os
from contextlib import contextmanager
from datetime import datetime

import inkex
from inkex.units import convert_unit
from lxml import etree

from ai_preview import (
    APPLY,
    GENERATE,
    REFRESH,
    STATUS_WARNING,
    PanelForm,
    PreviewGenerator,
    WorkflowController,
    preview_text,
)


class InkscapeHost:
    """Host document adapter over the SVG root an extension is working on."""

    LAYER_XPATH = '//svg:g[@inkscape:groupmode="layer"]'

    def __init__(self, svg):
        self.svg = svg

    def has_document(self):
        return self.svg is not None

    def document_name(self):
        return self.svg.get('sodipodi:docname')

    def document_width(self):
        return self._dimension('width')

    def document_height(self):
        return self._dimension('height')

    def document_resolution(self):
        dpi = self.svg.get('inkscape:export-xdpi')
        return float(dpi) if dpi else None

    def _dimension(self, attribute):
        value = self.svg.get(attribute)
        if not value:
            return None
        return convert_unit(value, 'px')

    def layers(self):
        return self.svg.xpath(self.LAYER_XPATH)

    def layer_count(self):
        return len(self.layers())

    def layer_names(self):
        return [layer.get('inkscape:label') for layer in self.layers()]

    @contextmanager
    def modal_scope(self, command_name):
        """Group mutations into one step; children added by a failing body are removed."""
        existing = len(self.svg)
        try:
            yield self.svg
        except Exception:
            for child in list(self.svg)[existing:]:
                self.svg.remove(child)
            raise

    def create_layer(self, name):
        layer = inkex.Layer.new(name)
        layer.set('id', self.svg.get_unique_id('ai-placeholder'))
        self.svg.append(layer)
        return layer


class AIPreviewPanel(inkex.EffectExtension):
    """Extension to preview AI image requests and insert placeholder layers."""

    # Configuration file paths
    CONFIG_FILENAME = 'config.json'
    HISTORY_FILENAME = 'ai_preview_history.json'

    MODELS = ['qwen', 'nano-banana', 'grok', 'meta']
    WORKFLOWS = ['generate', 'edit', 'expand']
    OPERATION_MODES = ['refresh', 'preview', 'apply']

    def __init__(self):
        super().__init__()
        # Set config paths - extension directory for portability
        self.extension_dir = os.path.dirname(os.path.abspath(__file__))
        self.config_path = os.path.join(self.extension_dir, self.CONFIG_FILENAME)
        self.history_path = os.path.join(self.extension_dir, self.HISTORY_FILENAME)

        # Load configuration on init
        self._config = self.load_config()
        self.controller = None

    def add_arguments(self, pars):
        pars.add_argument("--tab", type=str, default="request", help="Active tab")
        pars.add_argument("--operation_mode", type=str, default="preview",
            help="Operation mode: refresh, preview, apply")

        # Request settings
        pars.add_argument("--prompt", type=str, default="", help="Image description")
        pars.add_argument("--model", type=str, default="",
            help="Model: qwen, nano-banana, grok, meta (empty uses config)")
        pars.add_argument("--workflow", type=str, default="",
            help="Workflow: generate, edit, expand (empty uses config)")
        pars.add_argument("--strength", type=int, default=-1,
            help="Strength 0-100 (-1 uses config)")
        pars.add_argument("--preserve_subject", type=inkex.Boolean, default=False,
            help="Preserve the subject of the image")
        pars.add_argument("--respect_mask", type=inkex.Boolean, default=False,
            help="Restrict changes to the current mask")

        # History and defaults
        pars.add_argument("--save_history", type=inkex.Boolean, default=True,
            help="Save operation history")
        pars.add_argument("--remember_defaults", type=inkex.Boolean, default=False,
            help="Save model, workflow and strength as defaults after a successful preview")

    # ==================== Configuration Management ====================

    def load_config(self):
        """Load configuration from JSON file."""
        default_config = {
            'default_model': 'qwen',
            'default_workflow': 'generate',
            'default_strength': 50,
            'preview_latency': 0.5
        }

        if os.path.exists(self.config_path):
            try:
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    loaded_config = json.load(f)
                    # Merge with defaults to ensure all keys exist
                    default_config.update(loaded_config)
            except (OSError, ValueError) as e:
                inkex.errormsg(f"Warning: Could not load config file: {e}")

        return default_config

    def save_config(self, config=None):
        """Save configuration to JSON file."""
        if config is None:
            config = self._config

        try:
            with open(self.config_path, 'w', encoding='utf-8') as f:
                json.dump(config, f, indent=4)
        except OSError as e:
            inkex.errormsg(f"Warning: Could not save config file: {e}")

    def get_config_value(self, key, default=None):
        """Get a value from the configuration."""
        return self._config.get(key, default)

    def set_config_values(self, values):
        """Set values in the configuration and save."""
        self._config.update(values)
        self.save_config()

    def get_config_number(self, key, default, convert=float):
        """Get a numeric config value, falling back to the default if malformed."""
        value = self.get_config_value(key, default)
        try:
            return convert(value)
        except (TypeError, ValueError):
            inkex.errormsg(f"Warning: Invalid value for {key} in config file: {value!r}")
            return default

    def remember_defaults(self):
        """Store the request settings as defaults for the next run."""
        self.set_config_values({
            'default_model': self.options.model,
            'default_workflow': self.options.workflow,
            'default_strength': self.options.strength
        })

    def apply_config_defaults(self):
        """Apply defaults from config file if options not explicitly set."""
        if not self.options.model:
            self.options.model = self.get_config_value('default_model', 'qwen')

        if not self.options.workflow:
            self.options.workflow = self.get_config_value('default_workflow', 'generate')

        if self.options.strength == -1:
            self.options.strength = self.get_config_number('default_strength', 50, int)
        self.options.strength = max(0, min(100, self.options.strength))

    # ==================== History Management ====================

    def load_history(self):
        """Load operation history."""
        if os.path.exists(self.history_path):
            try:
                with open(self.history_path, 'r', encoding='utf-8') as f:
                    return json.load(f)
            except (OSError, ValueError) as e:
                inkex.errormsg(f"Warning: Could not read history file: {e}")
        return []

    def save_to_history(self, operation, status_kind):
        """Save operation to history file."""
        history = self.load_history()

        history.append({
            'timestamp': datetime.now().isoformat(),
            'operation': operation,
            'prompt': self.options.prompt.strip(),
            'model': self.options.model,
            'workflow': self.options.workflow,
            'strength': self.options.strength,
            'status': status_kind
        })

        # Keep only last 100 entries
        history = history[-100:]

        try:
            with open(self.history_path, 'w', encoding='utf-8') as f:
                json.dump(history, f, indent=2)
        except OSError as e:
            inkex.errormsg(f"Warning: Could not save history file: {e}")

    # ==================== Main Effect ====================

    def effect(self):
        """Main effect function."""
        self.apply_config_defaults()

        if self.options.operation_mode not in self.OPERATION_MODES:
            inkex.errormsg(f"Unknown operation mode: {self.options.operation_mode}")
            return

        generator = PreviewGenerator(latency=self.get_config_number('preview_latency', 0.5))
        self.controller = WorkflowController(InkscapeHost(self.svg), generator=generator)
        asyncio.run(self.run_session())

    def build_form(self):
        """Collect the panel inputs from the extension options."""
        return PanelForm(
            prompt=self.options.prompt,
            model=self.options.model,
            workflow=self.options.workflow,
            strength=self.options.strength,
            preserve_subject=self.options.preserve_subject,
            respect_mask=self.options.respect_mask
        )

    async def run_session(self):
        """Refresh, then generate and apply as the operation mode asks."""
        controller = self.controller
        await controller.dispatch(REFRESH)

        if self.options.operation_mode == 'refresh':
            inkex.errormsg(controller.document_info)
            return

        generated = await controller.dispatch(GENERATE, self.build_form())
        self.record(GENERATE)
        self.report()
        if not generated:
            return

        if self.options.remember_defaults:
            self.remember_defaults()

        if self.options.operation_mode == 'apply':
            await controller.dispatch(APPLY)
            self.record(APPLY)
            self.report(show_preview=False)

    def record(self, operation):
        kind = self.controller.status[0]
        # Rejected input is not an operation worth keeping
        if self.options.save_history and kind != STATUS_WARNING:
            self.save_to_history(operation, kind)

    def report(self, show_preview=True):
        """Print the status line, then the preview summary or the document readout."""
        kind, message = self.controller.status
        inkex.errormsg(f"[{kind}] {message}")
        if show_preview and self.controller.preview_url:
            try:
                inkex.errormsg(preview_text(self.controller.preview_url))
                return
            except (etree.XMLSyntaxError, ValueError) as e:
                inkex.errormsg(f"Warning: Could not read preview summary: {e}")
        if self.controller.document_info:
            inkex.errormsg(self.controller.document_info)


if __name__ == '__main__':
    AIPreviewPanel().run()
