from aiohttp import web
import logging

from udp_server import UDPServer

logger = logging.getLogger(__name__)

SERVER_KEY = web.AppKey("server", UDPServer)

# ==========================================
# SERVER DASHBOARD (Registry + Traffic)
# ==========================================
SERVER_HTML = """
<!DOCTYPE html>
<html>
<head>
    <title>UDP Server</title>
    <style>
        body { background-color: #1e1e1e; color: #00ff00; font-family: monospace; padding: 20px; }
        .card { border: 1px solid #333; padding: 15px; margin-bottom: 20px; border-radius: 5px; background: #252526; }
        h1, h2 { color: #00ff00; text-shadow: 0 0 5px #00ff00; }
        .stat-value { font-size: 1.5em; font-weight: bold; }
        ul { list-style-type: none; padding: 0; }
        li { padding: 5px 0; border-bottom: 1px solid #333; }
    </style>
</head>
<body>
    <h1>UDP Server</h1>

    <div class="card">
        <h2>Traffic</h2>
        <div>Upload Rate: <span id="upload_rate" class="stat-value">0</span> KB/s</div>
        <div>Download Rate: <span id="download_rate" class="stat-value">0</span> KB/s</div>
        <div>Packets In / Out: <span id="packets_received">0</span> / <span id="packets_sent">0</span></div>
        <div>Malformed: <span id="malformed">0</span> &nbsp; Socket Errors: <span id="errors">0</span></div>
    </div>

    <div class="card">
        <h2>Registry</h2>
        <div>Uptime: <span id="uptime">0</span> s</div>
        <div>Connected Peers: <span id="peer_count" class="stat-value">0</span></div>
        <ul id="peer_list"></ul>
    </div>

    <script>
        function updateStats() {
            fetch('/api/stats')
                .then(response => response.json())
                .then(data => {
                    document.getElementById('upload_rate').textContent = (data.upload_rate / 1024).toFixed(2);
                    document.getElementById('download_rate').textContent = (data.download_rate / 1024).toFixed(2);
                    document.getElementById('packets_received').textContent = data.packets_received;
                    document.getElementById('packets_sent').textContent = data.packets_sent;
                    document.getElementById('malformed').textContent = data.malformed;
                    document.getElementById('errors').textContent = data.errors;
                    document.getElementById('uptime').textContent = data.uptime;
                    document.getElementById('peer_count').textContent = data.peer_count;

                    const list = document.getElementById('peer_list');
                    list.innerHTML = '';
                    data.active_peers.forEach((p, i) => {
                        const li = document.createElement('li');
                        li.textContent = `#${i} ${p}`;
                        list.appendChild(li);
                    });
                });
        }
        setInterval(updateStats, 1000);
        updateStats();
    </script>
</body>
</html>
"""

async def handle_index(request):
    return web.Response(text=SERVER_HTML, content_type='text/html')

async def handle_stats(request):
    server = request.app[SERVER_KEY]
    return web.json_response(server.stats.get_stats(server.list_peers()))

async def handle_peers(request):
    server = request.app[SERVER_KEY]
    return web.json_response({"peers": server.list_peers()})

def create_app(server: UDPServer) -> web.Application:
    app = web.Application()
    app[SERVER_KEY] = server
    app.router.add_get('/', handle_index)
    app.router.add_get('/api/stats', handle_stats)
    app.router.add_get('/api/peers', handle_peers)
    return app

async def start_dashboard(server: UDPServer, port=8888, host='0.0.0.0') -> web.AppRunner:
    runner = web.AppRunner(create_app(server))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"Dashboard started at http://localhost:{port}")
    return runner
