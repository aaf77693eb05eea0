"""External services: remote document store, Google Books, HTTP clients and caching."""
