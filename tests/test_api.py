import io
from urllib.parse import parse_qs

from PIL import Image

from tests.utils import prepare_app, get_test_client


def test_caption_png_renders_scaled_image(tmp_path, monkeypatch):
    app, _ = prepare_app(tmp_path, monkeypatch)
    client = get_test_client(app)

    resp = client.get('/api/v1/caption.png', params={'top': 'Hi', 'bottom': 'There', 'width': 100, 'height': 100})

    assert resp.status_code == 200
    assert resp.headers['content-type'] == 'image/png'
    assert resp.headers['cache-control'] == 'no-store'
    with Image.open(io.BytesIO(resp.content)) as image:
        assert image.size == (100, 50)
    share = parse_qs(resp.headers['x-share-query'])
    assert share['top'] == ['Hi']
    assert share['bottom'] == ['There']
    assert share['bg'] == ['images/bg.png']


def test_caption_png_rejects_non_positive_viewport(tmp_path, monkeypatch):
    app, _ = prepare_app(tmp_path, monkeypatch)
    client = get_test_client(app)

    resp = client.get('/api/v1/caption.png', params={'width': 0})

    assert resp.status_code == 422


def test_caption_png_with_missing_background_still_renders(tmp_path, monkeypatch):
    app, _ = prepare_app(tmp_path, monkeypatch)
    client = get_test_client(app)

    resp = client.get('/api/v1/caption.png', params={'top': 'Hi', 'bg': 'images/nope.png', 'width': 540, 'height': 540})

    assert resp.status_code == 200
    with Image.open(io.BytesIO(resp.content)) as image:
        assert image.size == (540, 540)


def test_caption_params_resolves_random_slot(tmp_path, monkeypatch):
    app, _ = prepare_app(tmp_path, monkeypatch)
    client = get_test_client(app)

    resp = client.get('/api/v1/caption', params={'top': 'Listen\nson', 'bottom': 'random()'})

    assert resp.status_code == 200
    data = resp.json()
    assert data['params']['top_text'] == 'Listen\nson'
    assert data['params']['bottom_text'] in {'Never give up.', 'B', 'C'}
    assert data['share_query']['bottom'] == data['params']['bottom_text']
    assert 'random' not in data['share_url']
    assert data['meta']['title'] == 'Listen\nson'


def test_caption_params_without_parameters(tmp_path, monkeypatch):
    app, _ = prepare_app(tmp_path, monkeypatch)
    client = get_test_client(app)

    data = client.get('/api/v1/caption').json()

    assert data['wisdom'] in {'plain_bottom', 'top_bottom', 'top_center_bottom'}
    assert data['params']['top_text']
    assert data['params']['bottom_text']
    assert data['params']['background_ref'] == 'images/bg.png'


def test_caption_params_with_unreachable_record_uses_defaults(tmp_path, monkeypatch):
    app, _ = prepare_app(tmp_path, monkeypatch)
    client = get_test_client(app)

    data = client.get('/api/v1/caption', params={'top': 'ignored', 'data': str(tmp_path / 'missing.json')}).json()

    assert data['wisdom'] is None
    assert data['params']['top_text'] == 'Teď mě dobře poslouchej, mé dítě.'
    assert data['params']['bottom_text'] == 'Nikdy se nevzdávej.'


def test_save_settings_without_store(tmp_path, monkeypatch):
    app, _ = prepare_app(tmp_path, monkeypatch)
    client = get_test_client(app)

    resp = client.post('/api/v1/settings', json={'params': {'top': 'T', 'bottom': 'B', 'text': 'free'}})

    assert resp.status_code == 200
    data = resp.json()
    assert data['ok'] is False
    assert data['data'] is None
    assert data['settings']['topText'] == 'T'
    assert 'text' not in data['settings']


def test_save_settings_returns_locator(tmp_path, monkeypatch):
    app, app_module = prepare_app(tmp_path, monkeypatch)
    saved = {}

    def fake_save(settings):
        saved['settings'] = settings
        return 'https://store.example/b/1'

    monkeypatch.setattr(app_module.wisdom_sources, 'save_settings', fake_save)
    client = get_test_client(app)

    data = client.post('/api/v1/settings', json={'params': {'top': 'T', 'bottomFontSize': '50'}}).json()

    assert data['ok'] is True
    assert data['data'] == 'https://store.example/b/1'
    assert saved['settings']['bottomFontSize'] == 50
    assert saved['settings']['topText'] == 'T'


def test_save_settings_requires_api_key_when_configured(tmp_path, monkeypatch):
    app, app_module = prepare_app(tmp_path, monkeypatch)
    monkeypatch.setattr(app_module, 'API_KEY', 'secret')
    client = get_test_client(app)

    denied = client.post('/api/v1/settings', json={'params': {}})
    allowed = client.post('/api/v1/settings', json={'params': {}}, headers={'X-API-Key': 'secret'})

    assert denied.status_code == 401
    assert allowed.status_code == 200


def test_page_carries_og_metadata(tmp_path, monkeypatch):
    app, _ = prepare_app(tmp_path, monkeypatch)
    client = get_test_client(app)

    resp = client.get('/', params={'top': 'Hi & bye', 'bottom': 'There', 'topFontSize': '50'})

    assert resp.status_code == 200
    body = resp.text
    assert '<meta property="og:title" content="Hi &amp; bye">' in body
    assert '<meta property="og:description" content="There">' in body
    assert '<meta property="og:image" content="images/bg.png">' in body
    assert '/api/v1/caption.png?' in body
    assert 'topFontSize=50' in body


def test_caption_png_rejects_oversized_viewport(tmp_path, monkeypatch):
    app, _ = prepare_app(tmp_path, monkeypatch)
    client = get_test_client(app)

    resp = client.get('/api/v1/caption.png', params={'width': 1000000, 'height': 1000000})

    assert resp.status_code == 422


def test_caption_png_with_huge_font_size(tmp_path, monkeypatch):
    app, _ = prepare_app(tmp_path, monkeypatch)
    client = get_test_client(app)

    resp = client.get('/api/v1/caption.png', params={'top': 'hi', 'topFontSize': '100000000', 'width': 100, 'height': 100})

    assert resp.status_code == 200


def test_foreign_data_locator_does_not_receive_access_key(tmp_path, monkeypatch):
    app, _ = prepare_app(tmp_path, monkeypatch)
    import wisdom_sources

    monkeypatch.setattr(wisdom_sources, 'SETTINGS_ACCESS_KEY', 's3cret')
    monkeypatch.setattr(wisdom_sources, 'SETTINGS_STORE_URL', 'https://store.example/b')
    seen = {}

    class FakeResponse:
        def raise_for_status(self):
            return None

        def json(self):
            return {'topText': 'remote'}

    def fake_get(url, headers=None, timeout=None):
        seen[url] = dict(headers or {})
        return FakeResponse()

    monkeypatch.setattr(wisdom_sources.requests, 'get', fake_get)
    client = get_test_client(app)

    data = client.get('/api/v1/caption', params={'data': 'https://attacker.example/x'}).json()

    assert data['params']['top_text'] == 'remote'
    assert 'X-Access-Key' not in seen['https://attacker.example/x']


def test_request_cannot_read_absolute_local_paths(tmp_path, monkeypatch):
    app, _ = prepare_app(tmp_path, monkeypatch)
    secret = tmp_path / 'secret.json'
    secret.write_text('{"topText": "leaked", "wisdoms": [["leaked", "leaked"]]}', encoding='utf-8')
    client = get_test_client(app)

    by_data = client.get('/api/v1/caption', params={'data': str(secret)}).json()
    by_json = client.get('/api/v1/caption', params={'json': str(secret)}).json()
    by_parent = client.get('/api/v1/caption', params={'json': '../' + secret.name}).json()

    for data in (by_data, by_json, by_parent):
        assert data['params']['top_text'] != 'leaked'
        assert data['wisdom'] is None
