#!/usr/bin/env python
# -*- coding: UTF-8 -*-
'''
Comb
====
Comb is a tiny templating engine: literal text with embedded python code,
compiled to plain python functions.

Features
~~~~~~~~
 * Templates are compiled once to a function, then called many times.
 * Compiled templates are immutable and thread-safe.
 * Escaped output by default, raw output when asked for.
 * Templates can be read from strings, bytes, paths and streams.

Rules
~~~~~
 * Code blocks start with '<%', and end with '%>'.
 * Code blocks ending with ':' open a block, closed by '<% end %>'.
 * Escaped output starts with '<%=', and ends with '%>'.
 * Raw output starts with '<%==', and ends with '%>'.

Usage
~~~~~

example.py

    #!/usr/bin/env python
    # -*- coding: UTF-8 -*-
    import comb
    comb.evaluate("Hello <%= name %>", {"name": "world"})
    page = comb.compile_function("items", open("my_template.html"))
    page(["a", "b"])

my_template.html

    <ul>
    <% for item in items: %>
        <li><%= item %></li>
    <% end %>
    </ul>

'''

from .internal import (
    # Template
    Template, Segmenter, CodeTranslator, Literal, Tag,
    # Tag modes
    SILENT, ESCAPED, RAW,
    # Exceptions
    TemplateContextError, TemplateSyntaxError, TemplateValueError,
    # Public functions
    compile_function, evaluate, escape_html, read_source,
    )

__app__ = 'comb'
__version__ = '0.1.0'
__author__ = 'The comb authors'
