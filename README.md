# shortlink

A small web service for shortening URLs, built on Flask. It counts clicks and
unique visitors for each link. It makes QR codes as SVG images and manages user
accounts. Data is kept in MongoDB (`MongoStore`). There is also an in-process
`MemoryStore` with the same interface, for tests and local experiments.

## Installation

```
pip install .
```

To install the test dependencies as well:

```
pip install ".[test]"
```

## Running the server

```
PORT=8080 MONGODB_URL=mongodb://localhost:27017 shortlink
```

The `shortlink` command reads its settings from the environment. It also loads a
`.env` file if it finds one, searching from the working directory.

| Variable      | Meaning                                                        |
|---------------|----------------------------------------------------------------|
| `PORT`        | Port to listen on, bound to 127.0.0.1 (required, 0–65535)      |
| `MONGODB_URL` | MongoDB connection string (required); database `url_db` is used |
| `HOST`        | Public base for short links (default `http://localhost:8080`)  |

Requests are logged at INFO level through the `shortlink.access` logger. CORS is
allowed for the origins `http://localhost:5173` and `http://localhost:4173`,
with credentials. Requests from any other `Origin` get a 400 response.

## HTTP API

`GET /r/{code}` resolves a short link. It needs no authentication. The answer is
a 302 redirect, a 410 if the link has expired, or a 404 if the code is unknown.
Each redirect is counted in a background thread. The visitor's address
(`X-Forwarded-For` or the remote address) is stored only as a salted SHA-256
hash (`shortlink.hashing.hash_ip`).

Every route under `/api` goes through the application's `authenticate` callable.
When it returns `None`, the route answers 401.

| Method | Path                          | Purpose                                         |
|--------|-------------------------------|-------------------------------------------------|
| POST   | `/api/shorten`                | Create a short link (`url`, `custom_code`, `expires_in_days`) |
| GET    | `/api/urls`                   | List links (`search`, `owned_only`)             |
| DELETE | `/api/urls/{code}`            | Delete one of your own links, with its QR codes and visitors |
| GET    | `/api/users/{user_id}/urls`   | List a user's links (owner only)                |
| GET    | `/api/users/{user_id}/qr`     | List a user's QR codes (owner only)             |
| GET    | `/api/health/check`           | Ping the database                               |
| GET    | `/api/qr/{code}/regenerate`   | Fetch, or with `force=true` re-render, a link's QR code (`url_type`) |
| GET    | `/api/qr/{code}/info`         | Fetch a stored QR code as SVG (`url_type`)      |
| GET    | `/api/analytics/{code}`       | Clicks, unique visitors and QR status           |
| POST   | `/api/qr`                     | Make a QR code straight from a URL (`url`, `size`, `force_regenerate`) |
| GET    | `/api/qr`                     | List QR codes (`search`, `target_type`, `direct_only`, `owned_only`) |
| GET    | `/api/users`                  | List every user except the caller               |
| POST   | `/api/users`                  | Create a user (password hashed with bcrypt)     |
| GET/PUT/DELETE | `/api/users/{user_id}` | Read, edit or delete a user                    |

`url_type` is `original` (the QR code encodes the long URL) or anything else
(the QR code encodes the short URL). The boolean query parameters take `true`
or `false`. The regenerate route writes a fresh rendering back only when a QR
code for that link and target is already stored.

## Using it as a library

```python
from shortlink.app import create_app
from shortlink.store import MemoryStore

app = create_app(MemoryStore(), authenticate=lambda request: "user-1")
client = app.test_client()
response = client.post("/api/shorten", json={"url": "https://example.com"})
print(response.get_json()["short_url"])
```

`authenticate` receives the Flask request. It returns the caller's user id, or
`None` to refuse the request.

The operations can also be called without HTTP: `shortlink.urls`,
`shortlink.qr` and `shortlink.users` take a store and raise
`shortlink.models.ApiError`, which carries an HTTP `status`. The QR encoder is
available on its own too:

```python
from shortlink.qrsvg import encode, qr_svg

matrix = encode("https://example.com")   # QrMatrix, error correction level M
svg = qr_svg("https://example.com", 200)  # SVG string with a quiet zone
```

To use MongoDB, `shortlink.store.connect_mongo(url)` returns a `MongoStore`.

## What it does not do

The package does not log users in and does not issue or check tokens, and it
has no `/api/auth` routes. A program embedding it has to provide the
`authenticate` callable. The `shortlink` command has no such callable set up,
so it refuses every `/api` request with 401. Only `/r/{code}` redirects work
through that command.

## Tests

```
pytest
```