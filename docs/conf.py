# docs/conf.py
# Configuration file for the Sphinx documentation builder.

import os
import sys
# Point to project source code (relative to docs directory)
sys.path.insert(0, os.path.abspath('../src'))

# -- Project information -----------------------------------------------------
project = 'EDTSP'
copyright = '2025, Akita Engineering'
author = 'Akita Engineering'
release = '0.1.0'

# -- General configuration ---------------------------------------------------
extensions = [
    'sphinx.ext.autodoc',
    'sphinx.ext.napoleon',
    'sphinx.ext.intersphinx',
]
templates_path = ['_templates']
exclude_patterns = ['_build']

# -- Options for HTML output -------------------------------------------------
html_theme = 'sphinx_rtd_theme'

# -- Options for autodoc ----------------------------------------------------
autodoc_member_order = 'bysource'
autodoc_mock_imports = ['pubsub']

intersphinx_mapping = {'python': ('https://docs.python.org/3', None)}
