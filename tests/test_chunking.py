"""Tests for language resolution, file filtering and chunking."""

import textwrap

import pytest

from repolens.parsing import CodeChunker, FileFilter, GrammarRegistry, ParseError, is_binary_content


def source(text: str) -> str:
    return textwrap.dedent(text).lstrip("\n")


class TestGrammarRegistry:
    """Test cases for GrammarRegistry."""

    @pytest.fixture
    def registry(self):
        return GrammarRegistry()

    def test_extension_normalization(self, registry):
        """Extensions resolve case-insensitively, with or without the dot."""
        test_cases = [
            ("py", "python"),
            (".PY", "python"),
            ("Ts", "typescript"),
            (".tsx", "tsx"),
            ("JS", "javascript"),
            (".go", "go"),
            ("rs", "rust"),
            (".Java", "java"),
            (".xyz", None),
        ]

        for extension, expected in test_cases:
            assert registry.language_for_extension(extension) == expected

    def test_language_for_path(self, registry):
        assert registry.language_for_path("src/App.TSX") == "tsx"
        assert registry.language_for_path("docker/Dockerfile") == "dockerfile"
        assert registry.language_for_path("notes.unknown") == "text"
        assert registry.language_for_path("LICENSE") == "text"

    def test_has_grammar(self, registry):
        assert registry.has_grammar("python")
        assert registry.has_grammar("rust")
        assert not registry.has_grammar("markdown")

    def test_grammar_is_cached(self, registry):
        assert registry.get_language("go") is registry.get_language("go")
        assert registry.get_language("cobol") is None

    def test_parse_errors(self, registry):
        with pytest.raises(ParseError):
            registry.parse("python", "-" * 10_000)
        with pytest.raises(ParseError):
            registry.parse("python", "def broken(:\n")
        with pytest.raises(ParseError):
            registry.parse("go", "func (\n")
        with pytest.raises(ParseError):
            registry.parse("cobol", "IDENTIFICATION DIVISION.")


class TestFileFilter:
    """Test cases for FileFilter."""

    @pytest.fixture
    def file_filter(self):
        return FileFilter(max_file_bytes=1000)

    def test_excluded_paths(self, file_filter):
        excluded = [
            "node_modules/react/index.js",
            "packages/web/dist/bundle.js",
            "static/app.min.js",
            "assets/logo.PNG",
            ".env",
            ".github/workflows/ci.yml",
            "package-lock.json",
            "types/global.d.ts",
            "poetry.lock",
        ]
        for path in excluded:
            assert not file_filter.should_index(path), path

    def test_included_paths(self, file_filter):
        for path in ["src/main.py", "lib/api.ts", ".gitignore", "README.md", "cmd/server/main.go"]:
            assert file_filter.should_index(path), path

    def test_size_limit(self, file_filter):
        assert file_filter.should_index("src/main.py", size=1000)
        assert file_filter.skip_reason("src/main.py", size=1001) == "larger than 1000 bytes"

    def test_filter_paths(self, file_filter):
        assert file_filter.filter_paths(["a.py", "node_modules/b.js", "c.ts"]) == ["a.py", "c.ts"]

    def test_binary_content(self):
        assert is_binary_content(b"\x89PNG\r\n\x1a\n\x00\x00")
        assert not is_binary_content(b"print('hello')\n")


class TestCodeChunker:
    """Test cases for CodeChunker."""

    @pytest.fixture
    def chunker(self):
        return CodeChunker(max_file_bytes=10_000)

    def test_python_declarations(self, chunker):
        content = source('''
            import os

            @decorator
            def foo():
                return 1


            class Bar:
                def method(self):
                    pass

            async def baz():
                pass
        ''')

        chunks = chunker.chunk("pkg/mod.py", content, repository_id="repo-1")

        assert [(c.symbol_name, c.chunk_type) for c in chunks] == [
            ("foo", "function"),
            ("Bar", "class"),
            ("baz", "function"),
        ]
        assert (chunks[0].start_line, chunks[0].end_line) == (3, 5)
        assert chunks[0].content.startswith("@decorator")
        assert (chunks[1].start_line, chunks[1].end_line) == (8, 10)
        assert (chunks[2].start_line, chunks[2].end_line) == (12, 13)
        assert all(c.repository_id == "repo-1" and c.language == "python" for c in chunks)
        assert all(c.embedding is None for c in chunks)

    def test_typescript_declarations(self, chunker):
        content = source('''
            import { x } from './x';

            export function main(): void {
              console.log(x);
            }

            export const helper = (a: number) => a * 2;

            interface Props {
              name: string;
            }

            export class App {
              render() {}
            }
        ''')

        chunks = chunker.chunk("src/index.ts", content)

        assert [(c.symbol_name, c.chunk_type) for c in chunks] == [
            ("main", "function"),
            ("helper", "function"),
            ("Props", "symbol"),
            ("App", "class"),
        ]
        assert (chunks[0].start_line, chunks[0].end_line) == (3, 5)
        assert (chunks[1].start_line, chunks[1].end_line) == (7, 7)
        assert chunks[3].content == "export class App {\n  render() {}\n}"

    def test_go_declarations(self, chunker):
        content = source('''
            package main

            import "fmt"

            type Server struct {
            	Port int
            }

            func (s *Server) Start() error {
            	return nil
            }

            func main() {
            	fmt.Println("hi")
            }
        ''')

        chunks = chunker.chunk("cmd/main.go", content)

        assert [(c.symbol_name, c.chunk_type) for c in chunks] == [
            ("Server", "symbol"),
            ("Start", "function"),
            ("main", "function"),
        ]

    def test_rust_impl_names(self, chunker):
        content = source('''
            struct Point {
                x: i32,
            }

            impl fmt::Display for Point {
                fn fmt(&self, f: &mut fmt::Formatter) -> fmt::Result {
                    write!(f, "{}", self.x)
                }
            }

            fn main() {}
        ''')

        chunks = chunker.chunk("src/main.rs", content)

        assert [c.symbol_name for c in chunks] == ["Point", "fmt::Display for Point", "main"]
        assert chunks[1].chunk_type == "class"

    def test_declarations_do_not_overlap(self, chunker):
        content = source('''
            def a():
                pass

            def b():
                pass
        ''')

        chunks = chunker.chunk("m.py", content)

        for previous, current in zip(chunks, chunks[1:]):
            assert previous.end_line < current.start_line

    def test_unknown_extension_falls_back(self, chunker):
        content = "line one\nline two\nline three\n"

        chunks = chunker.chunk("notes/todo.xyz", content)

        assert len(chunks) == 1
        chunk = chunks[0]
        assert chunk.chunk_type == "other"
        assert chunk.symbol_name is None
        assert chunk.language == "text"
        assert (chunk.start_line, chunk.end_line) == (1, 3)
        assert chunk.content == content

    def test_malformed_source_falls_back(self, chunker):
        content = "def broken(:\n    pass\n"

        chunks = chunker.chunk("bad.py", content)

        assert len(chunks) == 1
        assert chunks[0].chunk_type == "other"
        assert chunks[0].language == "python"
        assert chunks[0].content == content

    @pytest.mark.parametrize("content", ["-" * 10_000, "~" * 10_000, "a." * 5_000 + "a"])
    def test_pathological_python_falls_back(self, content):
        chunker = CodeChunker()

        chunks = chunker.chunk("generated.py", content.encode("utf-8"))

        assert len(chunks) == 1
        assert chunks[0].chunk_type == "other"
        assert chunks[0].content == content

    def test_failing_strategy_falls_back(self):
        class ExplodingStrategy:
            def declarations(self, tree):
                raise RecursionError("maximum recursion depth exceeded")

        chunker = CodeChunker(strategies={"python": ExplodingStrategy()})

        chunks = chunker.chunk("deep.py", "def f():\n    return 1\n")

        assert len(chunks) == 1
        assert chunks[0].symbol_name is None

    def test_no_declarations_falls_back(self, chunker):
        chunks = chunker.chunk("settings.py", "DEBUG = True\nPORT = 8000")

        assert len(chunks) == 1
        assert (chunks[0].start_line, chunks[0].end_line) == (1, 2)

    def test_bytes_are_decoded(self, chunker):
        chunks = chunker.chunk("m.py", b"def f():\n    return 1\n")
        assert chunks[0].symbol_name == "f"

    def test_skipped_content(self, chunker):
        assert chunker.chunk("img.py", b"\x00\x01\x02") == []
        assert chunker.chunk("latin.py", b"caf\xe9 = 1\n") == []
        assert chunker.chunk("empty.py", "   \n\n") == []

    def test_oversized_file_skipped(self):
        chunker = CodeChunker(max_file_bytes=10)
        assert chunker.chunk("big.py", "x = 1\n" * 10) == []
