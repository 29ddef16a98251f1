#!/usr/bin/env python
# -*- coding: UTF-8 -*-

import io
import os.path
import shutil
import pathlib
import tempfile
import unittest
import concurrent.futures

from . import *


class TestEscapeHtml(unittest.TestCase):
    def testEntities(self):
        self.assertEqual(escape_html('<script>'), '&lt;script&gt;')
        self.assertEqual(escape_html('Hello & World'), 'Hello &amp; World')
        self.assertEqual(escape_html('a"b\'c'), 'a&quot;b&#x27;c')
        self.assertEqual(escape_html('<>&"\'' * 100), '&lt;&gt;&amp;&quot;&#x27;' * 100)

    def testNoDoubleEscapeProtection(self):
        self.assertEqual(escape_html('&amp;'), '&amp;amp;')

    def testPassthrough(self):
        self.assertIsNone(escape_html(None))
        self.assertEqual(escape_html(''), '')
        self.assertEqual(escape_html(123), '123')
        self.assertEqual(escape_html('javascript:alert(1)'), 'javascript:alert(1)')
        text = 'plain text, with {braces} and %percents%'
        self.assertEqual(escape_html(text), text)


class TestSegmenter(unittest.TestCase):
    def setUp(self):
        self.segmenter = Segmenter()

    def segment(self, code):
        return list(self.segmenter.segment(code))

    def testModes(self):
        self.assertEqual(
            self.segment('a<%= b %>c<% d %><%== e %>'),
            [Literal('a'),
             Tag(' b ', ESCAPED, 1, 1, 4),
             Literal('c'),
             Tag(' d ', SILENT, 1, 10, 12),
             Literal(''),
             Tag(' e ', RAW, 1, 17, 21),
             Literal('')])

    def testLiteralOnly(self):
        self.assertEqual(self.segment('foo'), [Literal('foo')])
        self.assertEqual(self.segment(''), [Literal('')])
        self.assertEqual(self.segment('100%> done'), [Literal('100%> done')])

    def testEmptyLiterals(self):
        self.assertEqual(
            self.segment('<%a%><%b%>'),
            [Literal(''), Tag('a', SILENT, 1, 0, 2), Literal(''), Tag('b', SILENT, 1, 5, 7), Literal('')])

    def testNonGreedy(self):
        segments = self.segment("<%= '%' %> and %>")
        self.assertEqual(segments[1], Tag(" '%' ", ESCAPED, 1, 0, 3))
        self.assertEqual(segments[2], Literal(' and %>'))

    def testLocation(self):
        segments = self.segment('first\nsecond <%= x %>\n<% y %>')
        self.assertEqual(segments[1].lineno, 2)
        self.assertEqual(segments[1].column, 7)
        self.assertEqual(segments[3].lineno, 3)
        self.assertEqual(segments[3].column, 0)

    def testJoin(self):
        codes = (
            'foo',
            '',
            'a<%= b %>c<% d %><%== e %>',
            '<%=x%>\n<% for x in xs: %>\n  <%== x %>\n<% end %>\n',
            )
        for code in codes:
            self.assertEqual(self.segmenter.join(self.segmenter.segment(code)), code)

    def testDelimiters(self):
        segmenter = Segmenter('{%', '%}')
        self.assertEqual(
            list(segmenter.segment('a{%= b %}<% c %>')),
            [Literal('a'), Tag(' b ', ESCAPED, 1, 1, 4), Literal('<% c %>')])
        self.assertRaises(TemplateValueError, Segmenter, '', '%>')
        self.assertRaises(TemplateValueError, Segmenter, '<%', '')
        self.assertRaises(TemplateValueError, Segmenter, '<%', '<%')
        self.assertRaises(TemplateValueError, Segmenter, None, 1)

    def testUnterminated(self):
        self.assertRaises(TemplateSyntaxError, self.segment, '<%= x')
        try:
            self.segment('line\nab<% x\nrest')
        except TemplateSyntaxError as e:
            self.assertEqual(e.lineno, 2)
            self.assertEqual(e.offset, 3)
            self.assertEqual(e.text, 'ab<% x')
            self.assertEqual(e.filename, '<template>')
        else:
            self.fail('TemplateSyntaxError not raised')


class TestCodeTranslator(unittest.TestCase):
    def setUp(self):
        self.translator = CodeTranslator()
        self.segmenter = Segmenter()

    def translate(self, code, params=(), mapping=False):
        segments = self.segmenter.segment(code)
        return ''.join(self.translator.translate_code(segments, params, mapping))

    def validate_syntax(self, code, params=()):
        return compile(self.translate(code, params), '<template>', 'exec')

    def testCompilation(self):
        self.validate_syntax('''
            <ul>
                <% for i in range(10): %>
                <li><%= i %></li>
                <% end %>
            </ul>
            '''.strip())

    def testInlinePass(self):
        self.validate_syntax('''
            <% if False: # comment %>
            <% elif '#': %>
            <% elif False: %>
            <% end %>
            <% if True: %><% end %>
            <% while False: %><%# nothing here %><% end %>
            '''.strip())

    def testPassOmitted(self):
        pycode = self.translate('<% if x: %>a<% else: %>b<% end %>', ('x',))
        self.assertNotIn('pass', pycode)
        pycode = self.translate('<% if x: %><% else: %>b<% end %>', ('x',))
        self.assertEqual(pycode.count('pass'), 1)

    def testGeneratedCode(self):
        pycode = self.translate('a<%= b %><%== c %>', ('b', 'c'))
        self.assertEqual(
            pycode.splitlines(),
            ['def __template__(b, c):',
             '    __output__ = []',
             '    __write__ = __output__.append',
             "    __write__('a')",
             '    __write__(__str__(__escape__(b)))',
             '    __write__(__str__(c))',
             "    return ''.join(__output__)"])

    def testMapping(self):
        pycode = self.translate('<%= x %>', ('x',), mapping=True)
        self.assertEqual(
            pycode.splitlines()[:2],
            ['def __template__(__bindings__):',
             "    x = __bindings__['x']"])

    def testBlocks(self):
        pycode = self.translate('<% for x in xs: %><% if x: %>y<% end %><% end %>z', ('xs',))
        self.assertEqual(
            pycode.splitlines()[3:-1],
            ['    for x in xs:',
             '        if x:',
             "            __write__('y')",
             "    __write__('z')"])

    def testExceptions(self):
        # Block limitations
        templates = (
            '<% end %>',
            '<% else: %>',
            '<% if True: %><% end %><% end %>',
            '<% for x in xs: %>foo',
            '<% if x: %><% else: %>',
            )
        for code in templates:
            generator = self.translator.translate_code(self.segmenter.segment(code), ('x', 'xs'))
            self.assertRaises(TemplateSyntaxError, ''.join, generator)
        # Expressions are checked by python itself
        for code in ('<%= %>', '<%== %>', '<%= 1 + %>'):
            generator = self.translator.translate_code(self.segmenter.segment(code))
            self.assertRaises(SyntaxError, ''.join, generator)

    def testUnclosedLocation(self):
        generator = self.translator.translate_code(self.segmenter.segment('a\n  <% for x in xs: %>'), ('xs',))
        try:
            ''.join(generator)
        except TemplateSyntaxError as e:
            self.assertEqual(e.lineno, 2)
            self.assertEqual(e.offset, 3)
        else:
            self.fail('TemplateSyntaxError not raised')

    def testParams(self):
        self.assertEqual(CodeTranslator.parse_params('a, b c'), ('a', 'b', 'c'))
        self.assertEqual(CodeTranslator.parse_params(['a', 'b']), ('a', 'b'))
        self.assertEqual(CodeTranslator.parse_params(''), ())
        for params in (['1a'], ['for'], ['a', 'a'], ['__write__'], ['not valid'], [1]):
            self.assertRaises(TemplateContextError, CodeTranslator.parse_params, params)

    def testBlockHeader(self):
        self.assertEqual(CodeTranslator.block_header('for x in xs:'), ('', True))
        self.assertEqual(CodeTranslator.block_header("elif '#': # comment"), ('', True))
        self.assertEqual(CodeTranslator.block_header('x = {"a": 1}'), ('', False))
        self.assertEqual(CodeTranslator.block_header('x = ('), ('', False))
        self.assertEqual(CodeTranslator.block_header('# for x in xs:'), ('', False))
        self.assertEqual(CodeTranslator.block_header('for x in (1,\n        2):'), ('', True))
        self.assertEqual(CodeTranslator.block_header('a = 1\nif a:\n    b = 1\n    if b:'), ('    ', True))

    def testMultilineStrings(self):
        pycode = self.translate('<% if x:\n    s = """a\n\n   b""" %><% end %>', ('x',))
        self.assertIn('s = """a\n\n   b"""', pycode)


class TestTemplate(unittest.TestCase):
    def testCall(self):
        template = compile_function(['x'], 'foo<%= x %>')
        self.assertEqual(template('bar'), 'foobar')
        self.assertEqual(template(x='baz'), 'foobaz')

    def testArity(self):
        template = compile_function('a, b', '<%= a %>-<%= b %>')
        self.assertEqual(template(1, 2), '1-2')
        self.assertEqual(template(b=2, a=1), '1-2')
        self.assertRaises(TypeError, template, 1)
        self.assertRaises(TypeError, template, 1, 2, 3)

    def testReuse(self):
        template = compile_function(['x'], '<%= x %>')
        self.assertEqual([template(i) for i in range(3)], ['0', '1', '2'])
        other = compile_function(['x'], '<%= x %>')
        self.assertEqual(template.pycode, other.pycode)
        self.assertEqual(template('<a>'), other('<a>'))

    def testNamespace(self):
        template = compile_function(['str', 'title'], '''
            <%
                total = 0
                for i in range(100):
                    total += i
            %>
            <%# Comment %>
            <% \'\'\'
            Multiline comment
            \'\'\' %>
            a<%= total // 2 %>b
            <%= str %> <%== title.upper() %>
            100%
            ''')
        lines = [line.strip() for line in template('s', 'x').splitlines()]
        self.assertEqual(lines, ['', '', '', '', 'a2475b', 's X', '100%', ''])

    def testControlFlow(self):
        template = compile_function(['n'], '''<%
            for i in range(n): %><%
                if i % 2: %>odd<%
                else: %>even<%
                end %>,<%
            end %>''')
        self.assertEqual(template(4), 'even,odd,even,odd,')
        self.assertEqual(template(0), '')

    def testTryExcept(self):
        template = compile_function(['d'], '<% try: %><%= d["k"] %><% except KeyError: %>missing<% end %>')
        self.assertEqual(template({'k': 1}), '1')
        self.assertEqual(template({}), 'missing')

    def testInlineElse(self):
        template = compile_function(['x'], '<% if x: %>yes<% else: x = "no" %><%= x %><% end %>')
        self.assertEqual(template(''), 'no')
        self.assertEqual(template(True), 'yesTrue')

    def testMultilineCode(self):
        template = compile_function(['x'], '<% if x:\n    y = "yes" %><%= x %>')
        self.assertEqual(template(''), '')
        template = compile_function(['x'], '<% if x:\n    y = "yes"\n   else:\n    y = "no" %><%= y %>')
        self.assertEqual(template(1), 'yes')
        self.assertEqual(template(0), 'no')
        template = compile_function(['x'], '<% y = "no"\nif x:\n    y = "yes" %><%= y %>')
        self.assertEqual(template(1), 'yes')
        self.assertEqual(template(0), 'no')
        # text before the tag on its first line
        template = compile_function(['x'], 'a<% for i in x:\n  y = i * 2\n  if y: %><%= y %><% end %>')
        self.assertEqual(template([0, 1, 2]), 'a24')

    def testMultilineStrings(self):
        self.assertEqual(evaluate('<% s = """a\n\n   b""" %><%== s %>'), 'a\n\n   b')
        template = compile_function(['x'], '<% for i in x: %><% s = """\n  %s\n"""\n y = s % i %><%== y %><% end %>')
        self.assertEqual(template([1, 2]), '\n  1\n\n  2\n')

    def testMultilineHeader(self):
        self.assertEqual(evaluate('<% for x in (1,\n           2): %><%= x %><% end %>'), '12')
        template = compile_function(['xs'], '<% for x in [\n    y * 2 for y in xs]: # doubled %><%= x %>,<% end %>')
        self.assertEqual(template([1, 2]), '2,4,')

    def testMultilineOutput(self):
        template = compile_function(['a', 'b'], '<%= (a +\n b) %>|<%= a # comment %>')
        self.assertEqual(template(1, 2), '3|1')

    def testSubclassDelimiters(self):
        class BraceSegmenter(Segmenter):
            tag_open = '{%'
            tag_close = '%}'

        class BraceTemplate(Template):
            segmenter_class = BraceSegmenter

        template = BraceTemplate('{% for x in xs: %}{%= x %}{% end %}<% x %>', ['xs'])
        self.assertEqual(template(['a<b', 'c']), 'a&lt;bc<% x %>')

    def testExceptions(self):
        self.assertRaises(TemplateSyntaxError, compile_function, ['x'], 'foo<%= x')
        self.assertRaises(SyntaxError, compile_function, (), '<% for %>')
        self.assertRaises(TemplateContextError, compile_function, ['a-b'], '')
        template = compile_function(['x'], 'before<%= x.missing %>after')
        self.assertRaises(AttributeError, template, 1)
        template = compile_function((), '<%= undefined %>')
        self.assertRaises(NameError, template)

    def testThreads(self):
        template = compile_function(['i'], '<% for j in range(i): %><%= j %>,<% end %>')
        expected = [''.join('%d,' % j for j in range(i)) for i in range(50)]
        with concurrent.futures.ThreadPoolExecutor(4) as executor:
            self.assertEqual(list(executor.map(template, range(50))), expected)

    def testLogging(self):
        with self.assertLogs('comb.internal', level='DEBUG') as logs:
            Template('<%= x %>', ['x'], 'logged.tpl')
        self.assertIn('logged.tpl', logs.output[0])
        self.assertIn('def __template__(x):', logs.output[0])

    def testRepr(self):
        self.assertEqual(repr(Template('', 'a, b')), '<Template <template>(a, b)>')


class TestEvaluate(unittest.TestCase):
    def testLiterals(self):
        self.assertEqual(evaluate('foo'), 'foo')
        self.assertEqual(evaluate(''), '')
        self.assertEqual(evaluate('100% "quoted" <b>&</b>'), '100% "quoted" <b>&</b>')

    def testExpressions(self):
        self.assertEqual(evaluate('<%= 10 %>'), '10')
        self.assertEqual(evaluate('<%= x %>', {'x': 'foo'}), 'foo')
        self.assertEqual(evaluate('<%=x%>', {'x': 'foo'}), 'foo')
        self.assertEqual(evaluate('<%= x + y %>', {'x': 'Hello', 'y': ' World'}), 'Hello World')
        self.assertEqual(evaluate('<%= x %>', {'x': 42}), '42')
        self.assertEqual(evaluate("<%= '%' %> and %>"), '% and %>')

    def testLoop(self):
        self.assertEqual(
            evaluate('<% for x in xs: %>foo<%= x %> <% end %>', {'xs': [1, 2, 3]}),
            'foo1 foo2 foo3 ')
        self.assertEqual(
            evaluate(
                '<ul><% for x in items: %><li><%= x %></li><% end %></ul>',
                {'items': ['<script>', 'Hello & World', 'a\'b"c']}),
            '<ul><li>&lt;script&gt;</li><li>Hello &amp; World</li><li>a&#x27;b&quot;c</li></ul>')

    def testEscaping(self):
        self.assertEqual(evaluate('<%= x %>', {'x': '<script>'}), '&lt;script&gt;')
        self.assertEqual(evaluate('<%= x %>', {'x': 'Hello & World'}), 'Hello &amp; World')
        self.assertEqual(evaluate('<%= x %>', {'x': 'a"b\'c'}), 'a&quot;b&#x27;c')
        self.assertEqual(
            evaluate('<%= x %>', {'x': "<script>alert('XSS')</script>"}),
            '&lt;script&gt;alert(&#x27;XSS&#x27;)&lt;/script&gt;')
        self.assertEqual(
            evaluate("<a href='<%= x %>'>link</a>", {'x': 'javascript:alert(1)'}),
            "<a href='javascript:alert(1)'>link</a>")
        self.assertEqual(
            evaluate('<%= x %>', {'x': '<div>Hello & "Welcome" to <b>Comb</b>!</div>'}),
            '&lt;div&gt;Hello &amp; &quot;Welcome&quot; to &lt;b&gt;Comb&lt;/b&gt;!&lt;/div&gt;')

    def testRaw(self):
        self.assertEqual(evaluate('<%== x %>', {'x': '<script>'}), '<script>')
        self.assertEqual(evaluate('<%== x %>', {'x': '<b>bold</b>'}), '<b>bold</b>')
        self.assertEqual(evaluate('<%== x %>', {'x': '&<>"\''}), '&<>"\'')

    def testNone(self):
        self.assertEqual(evaluate('<%= x %>', {'x': None}), 'None')
        self.assertEqual(evaluate('<%== x %>', {'x': None}), 'None')

    def testShadowedBuiltins(self):
        self.assertEqual(evaluate('<%= str %>', {'str': 'shadowed'}), 'shadowed')

    def testExceptions(self):
        self.assertRaises(TemplateSyntaxError, evaluate, '<%= x')
        self.assertRaises(SyntaxError, evaluate, '<%= %>')
        self.assertRaises(NameError, evaluate, '<%= missing %>', {'x': 1})
        self.assertRaises(TemplateContextError, evaluate, '', {'not valid': 1})
        self.assertRaises(TemplateContextError, evaluate, '', {1: 1})
        self.assertRaises(TemplateContextError, evaluate, '', {'__bindings__': 1})


class TestSources(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def write(self, name, data):
        path = os.path.join(self.tmpdir, name)
        with open(path, 'w', encoding='utf-8') as f:
            f.write(data)
        return path

    def testReadSource(self):
        self.assertEqual(read_source('<%= x %>'), '<%= x %>')
        self.assertEqual(read_source(b'caf\xc3\xa9'), 'café')
        self.assertEqual(read_source(io.StringIO('stream')), 'stream')
        self.assertEqual(read_source(io.BytesIO(b'caf\xc3\xa9')), 'café')
        path = self.write('template.tpl', 'from <%= "file" %>')
        self.assertEqual(read_source(pathlib.Path(path)), 'from <%= "file" %>')
        self.assertRaises(TypeError, read_source, 42)

    def testStreams(self):
        self.assertEqual(evaluate(io.StringIO('<%= x %>'), {'x': 1}), '1')
        path = self.write('template.tpl', '<% for x in xs: %><%= x %><% end %>')
        with open(path, encoding='utf-8') as f:
            template = compile_function(['xs'], f)
        self.assertEqual(template.filename, path)
        self.assertEqual(template('abc'), 'abc')
        self.assertEqual(evaluate(pathlib.Path(path), {'xs': [1, 2]}), '12')

    def testErrorFilename(self):
        path = self.write('broken.tpl', 'a\n<%= x')
        try:
            evaluate(pathlib.Path(path), {'x': 1})
        except TemplateSyntaxError as e:
            self.assertEqual(e.filename, path)
            self.assertEqual(e.lineno, 2)
        else:
            self.fail('TemplateSyntaxError not raised')

    def testReadErrors(self):
        missing = pathlib.Path(self.tmpdir, 'missing.tpl')
        self.assertRaises(OSError, evaluate, missing)
        self.assertRaises(UnicodeDecodeError, evaluate, io.BytesIO(b'\xff\xfe\xfa'))


if __name__ == '__main__':
    unittest.main()
