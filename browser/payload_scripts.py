"""
JavaScript payloads for the anti-fingerprinting pipeline.

Both scripts are registered as context init scripts, so they run in every
document before any page script:

1. ``get_config_seed_script`` checks the document host against the
   whitelist and seeds either the resolved configuration or ``false``
   (protections off for this page load) onto the page's global scope.
   A new seed is registered whenever the whitelist changes; the last
   registered seed wins.
2. ``PAGE_PROTECTIONS_PAYLOAD`` installs every wrapper once, pass-through
   until activation.  Activation happens on the first read of a protected
   primitive (or the first configuration update), i.e. after every init
   script has run, and reads the seeded configuration exactly once.

Later configuration changes are broadcast into the page with
``window.postMessage`` (``build_update_message``); the payload merges
the incoming fields into its live configuration and re-applies every
protection.  Each protection captures the original browser primitive once
and wraps that original, so re-applying never stacks wrappers.

Intercepted fingerprinting reads are reported, once per method and page,
through the ``REPORT_BINDING`` page binding when it is exposed.

Coverage:
- Canvas readback noise (toDataURL / getImageData, fresh noise per call)
- WebGL vendor/renderer/version spoofing
- Font metric noise (offsetWidth / offsetHeight on measured text)
- Screen geometry pinning (one common resolution per page lifetime)
- Navigator identity pinning (userAgent, platform, language, languages)
- WebRTC data-channel and media-capture blocking
- Timing jitter (performance.now / Date#getTime, offset re-rolled every 30s)
- Timezone pinning to UTC
- Battery status blocking
"""

import json
from typing import Any, Dict, Iterable, Mapping

CONFIG_GLOBAL = "__PRIVACY_SHIELD_CONFIG__"
UPDATE_MESSAGE_TYPE = "PRIVACY_SHIELD_UPDATE_CONFIG"
REPORT_BINDING = "__privacyShieldReport"
PROTOCOL_VERSION = 1

COMMON_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)
COMMON_PLATFORM = "Win32"
COMMON_LANGUAGES = ["en-US", "en"]

WEBGL_SPOOFED_PARAMETERS = {
    "VENDOR": "Intel Inc.",
    "RENDERER": "Intel Iris OpenGL Engine",
    "VERSION": "WebGL 1.0 (OpenGL ES 2.0 Chromium)",
    "SHADING_LANGUAGE_VERSION": (
        "WebGL GLSL ES 1.0 (OpenGL ES GLSL ES 1.0 Chromium)"
    ),
}

COMMON_RESOLUTIONS = [
    {"width": 1920, "height": 1080},
    {"width": 1366, "height": 768},
    {"width": 1440, "height": 900},
    {"width": 1536, "height": 864},
    {"width": 1280, "height": 720},
]
# Taskbar allowance subtracted from availHeight.
TASKBAR_HEIGHT = 40

TIMING_OFFSET_MAX = 10
TIMING_REROLL_MS = 30000


# ============================================================================
# Page-context payload
# Runs with the page's own privileges; reads the seeded config exactly once.
# ============================================================================
PAGE_PROTECTIONS_PAYLOAD = """
(function() {
    'use strict';
    if (window.__privacyShieldLoaded) return;
    Object.defineProperty(window, '__privacyShieldLoaded', { value: true });

    const CONFIG_GLOBAL = %(config_global)s;
    const UPDATE_TYPE = %(update_type)s;
    const REPORT_BINDING = %(report_binding)s;
    const PROTOCOL_VERSION = %(protocol_version)s;
    const PROTECTIONS = [
        'canvas', 'webgl', 'fonts', 'screen', 'userAgent',
        'webrtc', 'timing', 'timezone', 'battery'
    ];
    const defaults = {
        canvas: true, webgl: true, fonts: true, screen: true,
        webrtc: true, timing: true, userAgent: true, timezone: true
    };
    const cfg = Object.assign({}, defaults);
    const applied = {};
    const reported = {};

    // A seed that ran before this script left a plain value behind; seeds
    // registered after it go through the setter.  Once active, the seed is
    // frozen.
    let seeded = window[CONFIG_GLOBAL];
    let state = 'pending';
    Object.defineProperty(window, CONFIG_GLOBAL, {
        get: function() { return undefined; },
        set: function(value) { if (state === 'pending') seeded = value; },
        configurable: false
    });

    function activate() {
        if (state === 'pending') {
            if (seeded === false) {
                state = 'off';
            } else {
                Object.assign(cfg, seeded || {});
                state = 'on';
                applyAll();
            }
        }
        return state === 'on';
    }

    function on(name) {
        return activate() && applied[name] === true;
    }

    function report(method, details) {
        if (reported[method]) return;
        reported[method] = true;
        const binding = window[REPORT_BINDING];
        if (typeof binding !== 'function') return;
        try {
            Promise.resolve(binding(method, details || null)).catch(function() {});
        } catch (e) { /* reporting never breaks the page */ }
    }

    function guarded(name, fn) {
        try { fn(); } catch (e) { /* one failed patch never stops the rest */ }
    }

    // ---- Canvas ----
    function installCanvas() {
        const origToDataURL = HTMLCanvasElement.prototype.toDataURL;
        const origGetImageData = CanvasRenderingContext2D.prototype.getImageData;
        function addNoise(imageData) {
            const data = imageData.data;
            for (let i = 0; i < data.length; i += 4) {
                data[i] = data[i] + Math.floor(Math.random() * 3) - 1;
                data[i + 1] = data[i + 1] + Math.floor(Math.random() * 3) - 1;
                data[i + 2] = data[i + 2] + Math.floor(Math.random() * 3) - 1;
            }
            return imageData;
        }
        HTMLCanvasElement.prototype.toDataURL = function() {
            if (on('canvas')) {
                report('canvas', 'toDataURL');
                const ctx = this.getContext('2d');
                if (ctx && this.width && this.height) {
                    const imageData = origGetImageData.call(ctx, 0, 0, this.width, this.height);
                    addNoise(imageData);
                    ctx.putImageData(imageData, 0, 0);
                }
            }
            return origToDataURL.apply(this, arguments);
        };
        CanvasRenderingContext2D.prototype.getImageData = function() {
            const imageData = origGetImageData.apply(this, arguments);
            if (!on('canvas')) return imageData;
            report('canvas', 'getImageData');
            return addNoise(imageData);
        };
    }

    // ---- WebGL ----
    function installWebGL() {
        const spoofed = %(webgl_parameters)s;
        [window.WebGLRenderingContext, window.WebGL2RenderingContext].forEach(function(Ctx) {
            if (!Ctx) return;
            const origGetParameter = Ctx.prototype.getParameter;
            Ctx.prototype.getParameter = function(parameter) {
                if (on('webgl')) {
                    for (const name in spoofed) {
                        if (parameter === this[name]) {
                            report('webgl', name);
                            return spoofed[name];
                        }
                    }
                }
                return origGetParameter.apply(this, arguments);
            };
        });
    }

    // ---- Fonts ----
    function installFonts() {
        ['offsetWidth', 'offsetHeight'].forEach(function(prop) {
            const desc = Object.getOwnPropertyDescriptor(HTMLElement.prototype, prop);
            if (!desc || !desc.get || !desc.configurable) return;
            Object.defineProperty(HTMLElement.prototype, prop, {
                get: function() {
                    const value = desc.get.call(this);
                    if (on('fonts') && this.textContent && this.textContent.length < 20) {
                        return value + Math.floor(Math.random() * 3) - 1;
                    }
                    return value;
                },
                configurable: true
            });
        });
    }

    // Redefine each property unless it exists and is non-configurable.
    function pin(obj, name, values) {
        Object.keys(values).forEach(function(prop) {
            const desc = Object.getOwnPropertyDescriptor(obj, prop)
                || Object.getOwnPropertyDescriptor(Object.getPrototypeOf(obj), prop);
            if (desc && !desc.configurable) return;
            Object.defineProperty(obj, prop, {
                get: function() {
                    if (on(name)) return values[prop];
                    if (!desc) return undefined;
                    return desc.get ? desc.get.call(this) : desc.value;
                },
                configurable: true
            });
        });
    }

    // ---- Screen ----
    function installScreen() {
        const common = %(resolutions)s;
        const fake = common[Math.floor(Math.random() * common.length)];
        pin(screen, 'screen', {
            width: fake.width,
            height: fake.height,
            availWidth: fake.width,
            availHeight: fake.height - %(taskbar_height)s
        });
    }

    // ---- Navigator identity ----
    function installUserAgent() {
        pin(navigator, 'userAgent', {
            userAgent: %(user_agent)s,
            platform: %(platform)s,
            languages: Object.freeze(%(languages)s),
            language: %(language)s
        });
    }

    // ---- WebRTC ----
    function installWebRTC() {
        if (window.RTCPeerConnection) {
            const OrigRTC = window.RTCPeerConnection;
            const WrappedRTC = function() {
                const pc = new OrigRTC(...arguments);
                if (on('webrtc')) {
                    pc.createDataChannel = function() {
                        report('webrtc', 'createDataChannel');
                        throw new Error('WebRTC data channels blocked for privacy');
                    };
                }
                return pc;
            };
            WrappedRTC.prototype = OrigRTC.prototype;
            window.RTCPeerConnection = WrappedRTC;
        }
        if (navigator.mediaDevices && navigator.mediaDevices.getUserMedia) {
            const origGetUserMedia = navigator.mediaDevices.getUserMedia;
            navigator.mediaDevices.getUserMedia = function() {
                if (on('webrtc')) {
                    report('webrtc', 'getUserMedia');
                    return Promise.reject(new Error('Media access blocked for privacy'));
                }
                return origGetUserMedia.apply(this, arguments);
            };
        }
    }

    // ---- Timing ----
    let offset = 0;
    function installTiming() {
        const origNow = performance.now;
        const origGetTime = Date.prototype.getTime;
        performance.now = function() {
            const value = origNow.call(this);
            return on('timing') ? Math.floor(value + offset) : value;
        };
        Date.prototype.getTime = function() {
            const value = origGetTime.call(this);
            return on('timing') ? Math.floor(value + offset) : value;
        };
    }

    // ---- Timezone ----
    function installTimezone() {
        const origOffset = Date.prototype.getTimezoneOffset;
        Date.prototype.getTimezoneOffset = function() {
            return on('timezone') ? 0 : origOffset.call(this);
        };
        const OrigDTF = Intl.DateTimeFormat;
        const WrappedDTF = function(locales, options) {
            const opts = Object.assign({}, options || {});
            if (on('timezone') && !opts.timeZone) opts.timeZone = 'UTC';
            return new OrigDTF(locales, opts);
        };
        WrappedDTF.prototype = OrigDTF.prototype;
        WrappedDTF.supportedLocalesOf = OrigDTF.supportedLocalesOf;
        Intl.DateTimeFormat = WrappedDTF;
    }

    // ---- Battery ----
    function installBattery() {
        if (!navigator.getBattery) return;
        const origGetBattery = navigator.getBattery;
        navigator.getBattery = function() {
            if (on('battery')) {
                report('battery', 'getBattery');
                return Promise.reject(new Error('Battery API blocked for privacy'));
            }
            return origGetBattery.apply(this, arguments);
        };
    }

    // Flags only ever turn protections on; battery has no flag.
    function applyAll() {
        PROTECTIONS.forEach(function(name) {
            if (applied[name]) return;
            if (name !== 'battery' && !cfg[name]) return;
            applied[name] = true;
            if (name === 'timing') {
                offset = Math.random() * %(timing_offset_max)s;
                setInterval(function() {
                    offset = Math.random() * %(timing_offset_max)s;
                }, %(timing_reroll_ms)s);
            }
        });
    }

    guarded('canvas', installCanvas);
    guarded('webgl', installWebGL);
    guarded('fonts', installFonts);
    guarded('screen', installScreen);
    guarded('userAgent', installUserAgent);
    guarded('webrtc', installWebRTC);
    guarded('timing', installTiming);
    guarded('timezone', installTimezone);
    guarded('battery', installBattery);

    window.addEventListener('message', function(ev) {
        const msg = ev && ev.data;
        if (!msg || msg.type !== UPDATE_TYPE || msg.version !== PROTOCOL_VERSION) return;
        if (!activate()) return;
        Object.assign(cfg, msg.config || {});
        applyAll();
    });
})();
""" % {
    "config_global": json.dumps(CONFIG_GLOBAL),
    "update_type": json.dumps(UPDATE_MESSAGE_TYPE),
    "report_binding": json.dumps(REPORT_BINDING),
    "protocol_version": PROTOCOL_VERSION,
    "webgl_parameters": json.dumps(WEBGL_SPOOFED_PARAMETERS),
    "resolutions": json.dumps(COMMON_RESOLUTIONS),
    "taskbar_height": TASKBAR_HEIGHT,
    "user_agent": json.dumps(COMMON_USER_AGENT),
    "platform": json.dumps(COMMON_PLATFORM),
    "languages": json.dumps(COMMON_LANGUAGES),
    "language": json.dumps(COMMON_LANGUAGES[0]),
    "timing_offset_max": TIMING_OFFSET_MAX,
    "timing_reroll_ms": TIMING_REROLL_MS,
}


# ============================================================================
# Per-page seed
# Decides at document start whether this page load gets protections.
# ============================================================================
SEED_TEMPLATE = """
(function() {
    var host = (location.hostname || '').toLowerCase();
    var whitelist = %(whitelist)s;
    var listed = host !== '' && whitelist.some(function(d) {
        return host === d || host.slice(-(d.length + 1)) === '.' + d;
    });
    window[%(config_global)s] = listed ? false : %(config)s;
})();
"""


def get_config_seed_script(
    config: Mapping[str, Any], whitelist: Iterable[str] = (),
) -> str:
    """Return the init script that seeds *config* for non-whitelisted hosts.

    Hosts matching a *whitelist* entry exactly or by dot-suffix are seeded
    with ``false`` instead, which keeps every protection off.
    """
    return SEED_TEMPLATE % {
        "whitelist": json.dumps([d.lower() for d in whitelist]),
        "config_global": json.dumps(CONFIG_GLOBAL),
        "config": json.dumps(dict(config), sort_keys=True),
    }


def build_update_message(config: Mapping[str, Any]) -> Dict[str, Any]:
    """Typed broadcast message carrying a configuration update."""
    return {
        "type": UPDATE_MESSAGE_TYPE,
        "version": PROTOCOL_VERSION,
        "config": dict(config),
    }
