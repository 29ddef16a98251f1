#!/usr/bin/env python
# -*- coding: UTF-8 -*-

import io
import os
import re
import zlib
import keyword
import logging
import tokenize
import collections

logger = logging.getLogger(__name__)

# Tag modes
SILENT = "silent"
ESCAPED = "escaped"
RAW = "raw"

Literal = collections.namedtuple("Literal", ("text",))
Tag = collections.namedtuple("Tag", ("body", "mode", "lineno", "column", "body_column"))


class TemplateSyntaxError(SyntaxError):
    pass


class TemplateValueError(ValueError):
    pass


class TemplateContextError(ValueError):
    pass


def escape_html(value):
    '''
    Replace HTML special characters of given value's string form by their
    entities. None is returned as is.
    '''
    if value is None:
        return value
    return (
        str(value)
        .replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace("\"", "&quot;")
        .replace("'", "&#x27;")
        )


def read_source(source):
    '''
    Get template text from a string, bytes, path or readable stream.
    '''
    if isinstance(source, str):
        return source
    if isinstance(source, (bytes, bytearray)):
        return bytes(source).decode("utf-8")
    if isinstance(source, os.PathLike):
        with open(source, encoding="utf-8") as f:
            return f.read()
    if not hasattr(source, "read"):
        raise TypeError("Unsupported template source %r" % (source,))
    data = source.read()
    if isinstance(data, (bytes, bytearray)):
        data = bytes(data).decode("utf-8")
    return data


def source_filename(source):
    if isinstance(source, os.PathLike):
        return os.fspath(source)
    name = getattr(source, "name", None)
    return name if isinstance(name, str) else None


class Segmenter(object):
    '''
    Split template text into literal and tag segments.

    Rules:
     * Tags start with '<%', and end with the nearest '%>'.
     * Tags starting with '<%==' are raw output.
     * Tags starting with '<%=' are escaped output.
     * Any other tag is silent code.

    Resulting segments always alternate literal and tag, starting and
    ending with a literal (which can be empty).
    '''
    tag_open = "<%"
    tag_close = "%>"
    prefixes = (("==", RAW), ("=", ESCAPED))

    def __init__(self, tag_open=None, tag_close=None):
        if not tag_open is None:
            self.tag_open = tag_open
        if not tag_close is None:
            self.tag_close = tag_close
        for delimiter in (self.tag_open, self.tag_close):
            if not isinstance(delimiter, str) or not delimiter:
                raise TemplateValueError("Tag delimiters must be non-empty strings, got %r." % (delimiter,))
        if self.tag_open == self.tag_close:
            raise TemplateValueError("Tag delimiters must differ, got %r twice." % self.tag_open)

    @staticmethod
    def location(source, offset):
        lineno = source.count("\n", 0, offset) + 1
        column = offset - source.rfind("\n", 0, offset) - 1
        return lineno, column

    def split_mode(self, body):
        for prefix, mode in self.prefixes:
            if body.startswith(prefix):
                return body[len(prefix):], mode
        return body, SILENT

    def segment(self, source, filename=None):
        position = 0
        while True:
            start = source.find(self.tag_open, position)
            if start < 0:
                yield Literal(source[position:])
                return
            yield Literal(source[position:start])
            body_start = start + len(self.tag_open)
            end = source.find(self.tag_close, body_start)
            lineno, column = self.location(source, start)
            if end < 0:
                line_end = source.find("\n", start)
                line = source[start - column:line_end if line_end >= 0 else None]
                raise TemplateSyntaxError(
                    "Unterminated tag, %r expected" % self.tag_close,
                    (filename or "<template>", lineno, column + 1, line))
            data = source[body_start:end]
            body, mode = self.split_mode(data)
            body_column = column + len(self.tag_open) + len(data) - len(body)
            yield Tag(body, mode, lineno, column, body_column)
            position = end + len(self.tag_close)

    def join(self, segments):
        '''
        Rebuild template text from segments.
        '''
        prefixes = dict((mode, prefix) for prefix, mode in self.prefixes)
        parts = []
        for segment in segments:
            if isinstance(segment, Tag):
                parts.extend((
                    self.tag_open,
                    prefixes.get(segment.mode, ""),
                    segment.body,
                    self.tag_close,
                    ))
            else:
                parts.append(segment.text)
        return "".join(parts)


class CodeTranslator(object):
    '''
    Translate template segments to a python module defining a single
    '__template__' function, which returns the rendered text.

    Rules:
     * Code tags are copied into the function body at current indentation.
     * Code tags whose last statement ends with ':' open a block.
     * Code tags starting with 'else', 'elif', 'except' or 'finally' close
       current block and open another one.
     * Tag '<% end %>' closes current block.

    Features:
     * Keyword 'pass' is only added to blocks with no statements.
     * Output expressions are syntax-checked by themselves, so errors point
       to the offending expression rather than to generated code.
     * Multiline code tags keep their relative indentation, as if their
       first line started at column zero.
     * Lines inside multiline strings are left untouched.
    '''
    tab = "    "
    linesep = "\n"
    function_name = "__template__"
    end_token = "end"
    redent_tokens = ("else", "elif", "except", "finally")
    reserved_names = frozenset((
        "__bindings__", "__output__", "__write__", "__escape__", "__str__",
        ))
    ignored_tokens = frozenset((
        tokenize.COMMENT, tokenize.NL, tokenize.NEWLINE, tokenize.INDENT,
        tokenize.DEDENT, tokenize.ENDMARKER,
        ))

    def __init__(self):
        self.re_redent = re.compile(r"^(%s)\b" % "|".join(re.escape(i) for i in self.redent_tokens))

    @classmethod
    def parse_params(cls, params):
        '''
        Validate parameter names, given as an iterable or as a string of
        names separated by commas and/or whitespace.
        '''
        if isinstance(params, str):
            params = params.replace(",", " ").split()
        params = tuple(params)
        seen = set()
        for name in params:
            if not isinstance(name, str) or not name.isidentifier() or keyword.iskeyword(name):
                raise TemplateContextError("Invalid template parameter name %r." % (name,))
            if name in cls.reserved_names:
                raise TemplateContextError("Template parameter name %r is reserved." % name)
            if name in seen:
                raise TemplateContextError("Template parameter %r given twice." % name)
            seen.add(name)
        return params

    @staticmethod
    def tokens(source):
        '''
        Yield python tokens of source, stopping silently on tokenizer errors
        (compile will report them).
        '''
        try:
            for token in tokenize.generate_tokens(io.StringIO(source).readline):
                yield token
        except (tokenize.TokenError, SyntaxError):
            pass

    @classmethod
    def block_header(cls, source):
        '''
        Get indentation of the last statement of source, and whether that
        statement opens a block.
        '''
        start = header = last = None
        for token in cls.tokens(source):
            if token.type == tokenize.NEWLINE:
                start = None
            elif not token.type in cls.ignored_tokens:
                if start is None:
                    start = token
                header, last = start, token
        if last is None:
            return "", False
        indent = header.line[:header.start[1]]
        return indent, last.type == tokenize.OP and last.string == ":"

    def code_lines(self, tag):
        '''
        Get (line, verbatim) pairs of a code tag, dedented relative to the
        column of its first line. Verbatim lines continue a multiline string.
        '''
        first, newline, rest = tag.body.partition("\n")
        stripped = first.lstrip()
        raw = [stripped] + (rest.split("\n") if newline else [])

        verbatim = set()
        for token in self.tokens("\n".join(raw)):
            verbatim.update(range(token.start[0] + 1, token.end[0] + 1))

        margins = [
            len(line) - len(line.lstrip())
            for row, line in enumerate(raw[1:], 2)
            if not row in verbatim and line.strip()
            ]
        margin = min(margins) if margins else 0
        column = tag.body_column + len(first) - len(stripped)
        extra = ""
        if not stripped or margin < column:
            # first line is blank, or text precedes the tag on its line
            shift = margin
            if stripped and self.block_header(stripped)[1]:
                extra = self.tab
        else:
            shift = column

        lines = []
        for row, line in enumerate(raw, 1):
            if row in verbatim:
                lines.append((line, True))
            elif line.strip():
                if row > 1:
                    line = extra + line[shift:]
                lines.append((line.rstrip(), False))
        return lines

    @property
    def indent(self):
        return self.stack[-1][0]

    def syntax_error(self, message, tag):
        return TemplateSyntaxError(message, (self.filename, tag.lineno, tag.column + 1, None))

    def translate_block_end(self, tag, token):
        if len(self.stack) < 2:
            raise self.syntax_error("Unmatched %r token" % token, tag)
        if not self.touched:
            yield self.indent + "pass"
        self.stack.pop()
        self.touched = True

    def translate_literal(self, segment):
        if segment.text:
            yield "%s__write__(%r)" % (self.indent, segment.text)
            self.touched = True

    def translate_expression(self, tag):
        expr = tag.body.strip()
        compile(expr, self.filename, "eval")
        if "#" in expr:
            # keep closing parens out of trailing comments
            expr += self.linesep + self.indent
        if tag.mode == ESCAPED:
            yield "%s__write__(__str__(__escape__(%s)))" % (self.indent, expr)
        else:
            yield "%s__write__(__str__(%s))" % (self.indent, expr)
        self.touched = True

    def translate_code_tag(self, tag):
        lines = self.code_lines(tag)
        if not lines:
            return
        if lines == [(self.end_token, False)]:
            for line in self.translate_block_end(tag, self.end_token):
                yield line
            return
        redent = self.re_redent.match(lines[0][0])
        if redent:
            for line in self.translate_block_end(tag, redent.group(1)):
                yield line
        indent = self.indent
        for line, verbatim in lines:
            yield line if verbatim else indent + line
        if any(not (verbatim or line.startswith("#")) for line, verbatim in lines):
            self.touched = True
        header, opens = self.block_header("\n".join(line for line, verbatim in lines))
        if opens:
            self.stack.append((indent + header + self.tab, tag))
            self.touched = False
        elif redent:
            # inline 'else: ...' still needs its 'end'
            self.stack.append((indent + header, tag))

    def translate_code(self, segments, params=(), mapping=False, filename=None):
        '''
        Yield python source lines for given segments.

        With mapping, the function takes a single mapping argument whose
        items named in params are unpacked into locals.
        '''
        params = self.parse_params(params)
        self.filename = filename or "<template>"
        self.stack = [(self.tab, None)]
        self.touched = True

        if mapping:
            yield "def %s(__bindings__):%s" % (self.function_name, self.linesep)
            for name in params:
                yield "%s%s = __bindings__[%r]%s" % (self.tab, name, name, self.linesep)
        else:
            yield "def %s(%s):%s" % (self.function_name, ", ".join(params), self.linesep)
        yield "%s__output__ = []%s" % (self.tab, self.linesep)
        yield "%s__write__ = __output__.append%s" % (self.tab, self.linesep)

        for segment in segments:
            if isinstance(segment, Literal):
                lines = self.translate_literal(segment)
            elif segment.mode == SILENT:
                lines = self.translate_code_tag(segment)
            else:
                lines = self.translate_expression(segment)
            for line in lines:
                yield line + self.linesep

        if len(self.stack) > 1:
            raise self.syntax_error("Block is never closed by %r token" % self.end_token, self.stack[-1][1])
        yield "%sreturn ''.join(__output__)%s" % (self.tab, self.linesep)


class Template(object):
    '''
    Compiled template, callable with its declared parameters.

    Rendering state lives in the locals of the generated function, so a
    Template can be called any number of times, from any number of threads.
    '''
    segmenter_class = Segmenter
    translator_class = CodeTranslator

    def __init__(self, code, params=(), filename=None, mapping=False):
        self.filename = filename or "<template>"
        self.params = self.translator_class.parse_params(params)
        self.mapping = mapping
        self._code = code

        segments = self.segmenter_class().segment(code, self.filename)
        translator = self.translator_class()
        pycode = "".join(translator.translate_code(segments, self.params, mapping, self.filename))
        logger.debug("Compiled template %s:\n%s", self.filename, pycode)
        self._pycode = zlib.compress(pycode.encode("utf-8"))
        self._pycompiled = compile(pycode, self.filename, "exec")

        namespace = {
            "__escape__": escape_html,
            "__str__": str,
            }
        exec(self._pycompiled, namespace)
        self._function = namespace[translator.function_name]

    @property
    def code(self):
        return self._code

    @property
    def pycode(self):
        return zlib.decompress(self._pycode).decode("utf-8")

    @property
    def pycompiled(self):
        return self._pycompiled

    def __call__(self, *args, **kwargs):
        return self._function(*args, **kwargs)

    def __repr__(self):
        return "<%s %s(%s)>" % (self.__class__.__name__, self.filename, ", ".join(self.params))


def compile_function(params, source, filename=None):
    '''
    Compile template source into a reusable Template, called with the given
    parameters (positionally or by name) and returning the rendered text.
    '''
    code = read_source(source)
    return Template(code, params, filename or source_filename(source))


def evaluate(source, bindings=None, filename=None):
    '''
    Render template source once, with every key of bindings available to
    the template as a variable.
    '''
    if bindings is None:
        bindings = {}
    code = read_source(source)
    template = Template(code, tuple(bindings), filename or source_filename(source), mapping=True)
    return template(bindings)
