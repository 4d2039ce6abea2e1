"""Renderers: format a geometry model as raw data, XML or a gnuplot script."""
