from starlette.middleware.gzip import GZipMiddleware


# QR PNGs and receipts are already compressed; the threshold keeps small JSON untouched
def add_compression_middleware(app, minimum_size: int = 500):
    app.add_middleware(GZipMiddleware, minimum_size=minimum_size)
