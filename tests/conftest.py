"""
Shared fixtures for the Verisearch test suite.
"""

import os
import sys
from pathlib import Path

import pytest

# Ensure the src/ directory is on the import path so that
# verisearch.core.config / verisearch.core.extractor / etc. can be imported.
SRC_ROOT = Path(__file__).resolve().parent.parent / "src"
sys.path.insert(0, str(SRC_ROOT))

# Set dummy API keys so that VerisearchConfig has valid keys for tests
# that call validate(), get_api_key(), or create model adapters.
os.environ.setdefault("ANTHROPIC_API_KEY", "test-key-not-real")
os.environ.setdefault("OPENAI_API_KEY", "test-key-not-real")
os.environ.setdefault("GEMINI_API_KEY", "test-key-not-real")


# =============================================================================
# Fixtures: sample TSX / TS sources
# =============================================================================

WIDGET_TSX = (
    "import React from 'react';\n"                                  # 1
    "import { formatCount } from './format';\n"                     # 2
    "\n"                                                            # 3
    "/** Props for the Widget card. */\n"                           # 4
    "export interface WidgetProps {\n"                              # 5
    "  title: string;\n"                                            # 6
    "  count?: number;\n"                                           # 7
    "  onSelect: (id: string) => void;\n"                           # 8
    "}\n"                                                           # 9
    "\n"                                                            # 10
    "/** Renders a widget card. */\n"                               # 11
    "export const Widget = ({ title, count }: WidgetProps) => {\n"  # 12
    "  return (\n"                                                  # 13
    "    <div className=\"widget\">\n"                              # 14
    "      <h2>{title}</h2>\n"                                      # 15
    "      <span>{formatCount(count)}</span>\n"                     # 16
    "    </div>\n"                                                  # 17
    "  );\n"                                                        # 18
    "};\n"                                                          # 19
    "\n"                                                            # 20
    "export default Widget;\n"                                      # 21
)

FORMAT_TS = (
    "/** Format a count for display. */\n"
    "export function formatCount(count?: number): string {\n"
    "  if (count === undefined) {\n"
    "    return '-';\n"
    "  }\n"
    "  return count.toLocaleString();\n"
    "}\n"
)

SERVICE_TS = (
    "import { formatCount } from './format';\n"
    "\n"
    "export interface UserData {\n"
    "  id: string;\n"
    "  name: string;\n"
    "}\n"
    "\n"
    "export class BaseService {\n"
    "  protected baseUrl = '/api';\n"
    "}\n"
    "\n"
    "export class UserService extends BaseService {\n"
    "  async fetchUser(id: string): Promise<UserData> {\n"
    "    const res = await fetch(`${this.baseUrl}/users/${id}`);\n"
    "    return res.json();\n"
    "  }\n"
    "\n"
    "  describeCount(n: number): string {\n"
    "    return formatCount(n);\n"
    "  }\n"
    "}\n"
)


@pytest.fixture
def widget_source() -> str:
    """TSX module with a props interface, an arrow-function component, and imports."""
    return WIDGET_TSX


@pytest.fixture
def format_source() -> str:
    return FORMAT_TS


@pytest.fixture
def service_source() -> str:
    """TS module with an interface, a base class, and a subclass with methods."""
    return SERVICE_TS


@pytest.fixture
def tmp_project(tmp_path: Path) -> Path:
    """
    A temporary TypeScript project:

        src/components/Widget.tsx   (imports ./format)
        src/components/format.ts
        src/services/UserService.ts
        node_modules/lib/index.js   (excluded directory)
    """
    components = tmp_path / "src" / "components"
    components.mkdir(parents=True)
    (components / "Widget.tsx").write_text(WIDGET_TSX, encoding="utf-8")
    (components / "format.ts").write_text(FORMAT_TS, encoding="utf-8")

    services = tmp_path / "src" / "services"
    services.mkdir(parents=True)
    (services / "UserService.ts").write_text(
        SERVICE_TS.replace("'./format'", "'../components/format'"), encoding="utf-8",
    )

    excluded = tmp_path / "node_modules" / "lib"
    excluded.mkdir(parents=True)
    (excluded / "index.js").write_text("export function Widget() { return 1; }\n", encoding="utf-8")

    return tmp_path
