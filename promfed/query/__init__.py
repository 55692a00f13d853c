"""Querying store data: series iterators, the querier and HTTP API helpers."""