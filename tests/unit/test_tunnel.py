import asyncio

from conftest import write_script
from nautic.services.tunnel import TUNNEL_URL_PATTERN, TunnelManager

FAKE_CLOUDFLARED = (
    'echo "INF Requesting new quick Tunnel on trycloudflare.com..." >&2\n'
    'echo "INF |  https://quiet-fox-123.trycloudflare.com  |" >&2\n'
    "exec sleep 30\n"
)


class TestStart:
    def test_reports_public_url(self, tmp_path):
        tunnel = TunnelManager(str(write_script(tmp_path / "cloudflared", FAKE_CLOUDFLARED)), timeout=5)

        async def scenario():
            first = await tunnel.start(5678)
            second = await tunnel.start(5678)
            status = tunnel.status()
            await tunnel.stop()
            return first, second, status

        first, second, status = asyncio.run(scenario())

        assert first.success is True
        assert first.url == "https://quiet-fox-123.trycloudflare.com"
        assert second.url == first.url
        assert status.active is True
        assert status.starting is False
        assert tunnel.active is False
        assert tunnel.url is None

    def test_exit_before_url(self, tmp_path):
        tunnel = TunnelManager(str(write_script(tmp_path / "cloudflared", "exit 2\n")), timeout=5)

        result = asyncio.run(tunnel.start(5678))

        assert result.success is False
        assert result.error == "Tunnel process exited (code 2)"
        assert tunnel.process is None

    def test_startup_timeout(self, tmp_path):
        tunnel = TunnelManager(str(write_script(tmp_path / "cloudflared", "exec sleep 30\n")), timeout=0.3)

        async def scenario():
            result = await tunnel.start(5678)
            await tunnel.stop()
            return result

        result = asyncio.run(scenario())
        assert result.success is False
        assert result.error == "Tunnel startup timeout (0.3s)"

    def test_second_start_while_starting(self, tmp_path):
        tunnel = TunnelManager(str(write_script(tmp_path / "cloudflared", "exec sleep 30\n")), timeout=5)

        async def scenario():
            first = asyncio.ensure_future(tunnel.start(5678))
            for _ in range(100):
                if tunnel.process is not None:
                    break
                await asyncio.sleep(0.02)
            second = await tunnel.start(5678)
            starting = tunnel.status().starting
            await tunnel.stop()
            return await first, second, starting

        first, second, starting = asyncio.run(scenario())

        assert second.success is False
        assert second.error == "Tunnel is already starting"
        assert starting is True
        assert first.success is False

    def test_missing_binary(self, tmp_path):
        tunnel = TunnelManager(str(tmp_path / "missing"))
        assert tunnel.is_installed() is False

        result = asyncio.run(tunnel.start(5678))
        assert result.success is False
        assert "not found" in result.error

    def test_stop_when_idle(self):
        tunnel = TunnelManager("cloudflared")
        asyncio.run(tunnel.stop())
        assert tunnel.status().active is False


class TestUrlPattern:
    def test_matches_quick_tunnel_urls_only(self):
        line = "2024-01-01T00:00:00Z INF |  https://abc-def-42.trycloudflare.com  |"
        assert TUNNEL_URL_PATTERN.search(line).group(0) == "https://abc-def-42.trycloudflare.com"
        assert TUNNEL_URL_PATTERN.search("https://example.com") is None
