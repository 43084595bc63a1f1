"""
Tests for the codebase tools offered to model tiers (verisearch.core.tools).
"""

import pytest

from verisearch.core.tools import SearchToolbox, Tool, run_tool


@pytest.fixture
def toolbox(tmp_project):
    return SearchToolbox(tmp_project)


class TestToolbox:

    def test_names_and_subsets(self, toolbox):
        assert toolbox.names == ["search_code", "grep", "glob", "read_file", "list_dir"]
        assert [t.name for t in toolbox.tools(("grep", "glob"))] == ["grep", "glob"]
        with pytest.raises(KeyError):
            toolbox.tools(("shell",))

    def test_schemas_are_objects(self, toolbox):
        for tool in toolbox.tools():
            assert tool.parameters["type"] == "object"
            assert set(tool.parameters["required"]) <= set(tool.parameters["properties"])

    def test_search_code_runs_the_pipeline(self, toolbox):
        text = run_tool(toolbox.tools(), "search_code", {"query": "find the Widget component"})
        assert "Path: src/components/Widget.tsx" in text

    def test_grep(self, toolbox):
        text = toolbox.grep("formatCount\\(")
        assert "src/components/format.ts:2" in text
        assert "node_modules" not in text

    def test_grep_falls_back_to_literal_on_bad_regex(self, toolbox):
        assert toolbox.grep("formatCount(").startswith("Found ")

    def test_glob(self, toolbox):
        text = toolbox.glob("src/**/*.ts")
        assert "src/components/format.ts" in text
        assert "src/services/UserService.ts" in text
        assert "node_modules/lib/index.js" not in toolbox.glob("*.js")

    def test_read_file_numbers_lines(self, toolbox):
        text = toolbox.read_file("src/components/format.ts", start_line=2)
        assert text.splitlines()[0] == "── src/components/format.ts ──"
        assert "   2 | export function formatCount" in text
        assert "   1 |" not in text

    def test_list_dir(self, toolbox):
        listing = toolbox.list_dir("src").splitlines()
        assert listing == ["components/", "services/"]
        assert "node_modules/" not in toolbox.list_dir(".")

    def test_paths_outside_the_root_are_refused(self, toolbox):
        text = run_tool(toolbox.tools(), "read_file", {"path": "../../etc/passwd"})
        assert text.startswith("Error:")
        assert "outside the search root" in text


class TestToolDispatch:

    def test_unknown_tool(self):
        assert run_tool([], "shell", {}) == "Error: unknown tool 'shell'"

    def test_bad_arguments_come_back_as_text(self):
        tool = Tool(name="echo", description="", parameters={}, handler=lambda text: text)
        assert tool.run({"text": "hi"}) == "hi"
        assert tool.run({"nope": 1}).startswith("Error: invalid arguments for echo")
        assert tool.run(None).startswith("Error: invalid arguments for echo")

    def test_handler_failure_comes_back_as_text(self):
        def boom():
            raise OSError("gone")

        assert Tool(name="boom", description="", parameters={}, handler=boom).run() == "Error: gone"
