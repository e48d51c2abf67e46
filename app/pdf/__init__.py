"""
Generación de PDF para documentos tributarios
"""
from .dte_renderer import render_dte_pdf, PAPEL_CONTINUO

__all__ = ['render_dte_pdf', 'PAPEL_CONTINUO']
