"""
Emisor de DTE: CLI y funciones núcleo (emitir, preview, json de impresión, envío múltiple)
"""
