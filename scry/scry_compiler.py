"""
Compiler delegates turn input-language source into plain Python plus an
inline position map.

The bundled `TypedPythonCompiler` treats annotated Python as the input
language and compiles it by erasing type-only syntax, much as a typed
superset is compiled down to its dynamic base language.
"""

import ast
import logging
import warnings
from abc import ABC, abstractmethod
from typing import List

from scry.scry_datatypes import CompileOutput, CompilerError, Diagnostic
from scry.scry_sourcemap import SourceMapBuilder, encode_inline

logger = logging.getLogger(__name__)

SOURCE_NAME = "<input>"

# Warnings raised while compiling that are worth showing to the author.
_REPORTED_WARNINGS = (SyntaxWarning, DeprecationWarning)


class CompilerDelegate(ABC):
    """Source text in, `CompileOutput` out. Opaque to the rest of the engine."""

    @abstractmethod
    def compile(self, source: str) -> CompileOutput:
        raise NotImplementedError


class AnnotationEraser(ast.NodeTransformer):
    """Removes annotations that carry no runtime meaning.

    Class-body annotations are kept: dataclasses, NamedTuple and TypedDict
    read them at runtime.
    """

    def __init__(self):
        self._class_depth = 0
        self._function_depth = 0

    def generic_visit(self, node):
        super().generic_visit(node)
        # Erasure can leave a block empty; the language needs a statement there.
        body = getattr(node, 'body', None)
        if isinstance(body, list) and not body and not isinstance(node, ast.Module):
            node.body.append(ast.copy_location(ast.Pass(), node))
        return node

    def _visit_function(self, node):
        node.returns = None
        if hasattr(node, 'type_params'):
            node.type_params = []
        self._function_depth += 1
        try:
            return self.generic_visit(node)
        finally:
            self._function_depth -= 1

    visit_FunctionDef = _visit_function
    visit_AsyncFunctionDef = _visit_function

    def visit_ClassDef(self, node):
        if hasattr(node, 'type_params'):
            node.type_params = []
        outer_functions = self._function_depth
        self._class_depth += 1
        self._function_depth = 0
        try:
            return self.generic_visit(node)
        finally:
            self._class_depth -= 1
            self._function_depth = outer_functions

    def visit_arg(self, node):
        node.annotation = None
        return node

    def visit_AnnAssign(self, node):
        if self._class_depth and not self._function_depth:
            return self.generic_visit(node)
        if node.value is None:
            return None
        self.generic_visit(node)
        return ast.copy_location(ast.Assign(targets=[node.target], value=node.value, type_comment=None), node)

    def visit_TypeAlias(self, node):
        return None

    def visit_ImportFrom(self, node):
        if node.module == "__future__":
            return None
        return node


class TypedPythonCompiler(CompilerDelegate):
    """Compiles annotated Python into plain Python with a Source Map v3."""

    def __init__(self, source_name: str = SOURCE_NAME, embed_source: bool = False):
        self.source_name = source_name
        self.embed_source = embed_source

    def _check(self, source: str):
        """Parse and compile `source` as the interpreter would, collecting diagnostics."""
        diagnostics: List[Diagnostic] = []
        tree = None
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            try:
                tree = ast.parse(source, filename=self.source_name)
                compile(tree, self.source_name, "exec",
                        flags=ast.PyCF_ALLOW_TOP_LEVEL_AWAIT, dont_inherit=True)
            except SyntaxError as e:
                diagnostics.append(Diagnostic.from_syntax_error(e))
                tree = None
            except ValueError as e:
                # e.g. source containing null bytes
                diagnostics.append(Diagnostic(code=type(e).__name__, message=str(e)))
                tree = None
        for w in caught:
            if issubclass(w.category, _REPORTED_WARNINGS):
                diagnostics.append(Diagnostic(
                    code=w.category.__name__,
                    message=str(w.message),
                    category='warning',
                    line=w.lineno or None,
                ))
        return tree, diagnostics

    def compile(self, source: str) -> CompileOutput:
        tree, diagnostics = self._check(source)
        if tree is None:
            return CompileOutput("", diagnostics)

        erased = ast.fix_missing_locations(AnnotationEraser().visit(tree))
        generated = ast.unparse(erased)
        try:
            regenerated = ast.parse(generated, filename=self.source_name)
        except SyntaxError as e:
            raise CompilerError(f"erased program does not parse: {e}") from e

        builder = SourceMapBuilder(
            self.source_name,
            source_text=source if self.embed_source else None,
        )
        self._record_positions(erased, regenerated, builder)
        text = generated + "\n" + encode_inline(builder.to_dict()) + "\n"
        return CompileOutput(text, diagnostics)

    @staticmethod
    def _record_positions(original: ast.AST, regenerated: ast.AST, builder: SourceMapBuilder) -> None:
        # Reparsing unparsed code yields the same tree shape, so a parallel
        # walk pairs every node with its reprinted twin.
        for orig, gen in zip(ast.walk(original), ast.walk(regenerated)):
            if type(orig) is not type(gen):
                logger.debug("position walk diverged at %s/%s", type(orig).__name__, type(gen).__name__)
                return
            if 'lineno' not in orig._attributes:
                continue
            orig_line = getattr(orig, 'lineno', None)
            gen_line = getattr(gen, 'lineno', None)
            if orig_line is None or gen_line is None:
                continue
            builder.add_mapping(gen_line, gen.col_offset, orig_line, orig.col_offset)
