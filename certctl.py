#!/usr/bin/env python3

""" Issue the certificates your nginx configuration asks for.

certctl reads nginx virtual host files, finds every certificate whose
'ssl_certificate_key' lives in a certbot 'live/' directory, collects the
server names served next to it, and asks certbot for exactly that
certificate. Your nginx config is the only list of certificates there is,
so running certctl twice against the same config requests the same things.

Certificate policy lives in the certificate name itself:
    - key type: 'ecdsa', 'ecc' or 'rsa' anywhere in the name between
      '-' or '.' separators (e.g. shop-rsa, shop.ecc)
    - challenge: 'webroot' or 'dns-<provider>' (e.g. shop-dns-route53)
Anything the name doesn't say comes from certctl.conf (or the command line),
then from built-in defaults: ecdsa keys with webroot challenges.

Many server names can be collapsed into one certificate name (usually a
wildcard) by tagging server_name lines with a comment:
    server_name a.example.com b.example.com; # certbot_domain:*.example.com
The first tagged name opens a block and requests '*.example.com' instead,
every server name up to the next identical tag is covered by it.

Brief overview of terms:
    - ACME: protocol spoken by Let's Encrypt; certbot is our ACME client
    - CN: Common Name - the first domain on a certificate
    - SAN: subjectAltName - more domains on the same certificate
    - DH: Diffie-Hellman - 'ssl_dhparam' files are generated when missing
    - webroot: http-01 challenge files dropped into a directory nginx serves
    - DNS plugin: dns-01 challenge records created through a certbot plugin
"""

import multiprocessing
import configparser
import collections
import subprocess
import ipaddress
import functools
import itertools
import argparse
import pathlib
import shlex
import sys
import os

# Endpoints taken from:
# https://letsencrypt.org/docs/acme-protocol-updates/
STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"
PRODUCTION = "https://acme-v02.api.letsencrypt.org/directory"

CONFIG_PATH = "/etc/letsencrypt/certctl.conf"

# Comment tag on server_name lines substituting a block of names
MARKER = "certbot_domain:"

# DNS plugins certbot ships; each reads '<letsencryptDir>/<provider>.ini'
# except route53, which uses the regular AWS credential lookup.
DNS_PROVIDERS = (
    "cloudflare",
    "cloudxns",
    "digitalocean",
    "dnsimple",
    "dnsmadeeasy",
    "gehirn",
    "google",
    "linode",
    "luadns",
    "nsone",
    "ovh",
    "rfc2136",
    "route53",
    "sakuracloud",
)
AMBIENT_PROVIDER = "route53"

KEY_TYPES = ("ecdsa", "rsa")

# (name tag, key type), first match wins
KEY_TYPE_TAGS = (("ecdsa", "ecdsa"), ("ecc", "ecdsa"), ("rsa", "rsa"))

# Let's Encrypt has per-second rate limits and we don't retry, so
# don't let '--parallel' hammer the endpoints.
MAX_CONCURRENCY = 10

# Names nginx accepts that no public CA will ever issue for
PLACEHOLDER_NAMES = ("_", '""', "''")

# Values below are replaced from the command line in main()
IS_TEST = False
IS_CRON = False
VERBOSITY = 1

CONFIG_DEFAULTS = {
    "email": "",
    "keyType": "",
    "authenticator": "",
    "rsaKeySize": "2048",
    "curve": "secp256r1",
    "dhparamBits": "2048",
    "webroot": "/var/www/letsencrypt",
    "letsencryptDir": "/etc/letsencrypt",
    "nginxConfig": "/etc/nginx/conf.d",
    # nginx resolves relative paths in its config against this
    "nginxPrefix": "/etc/nginx",
    "dnsPropagationSeconds": "0",
    "acmeTimeout": "0",
    "dhparamTimeout": "0",
    # Run the certbot installed next to us instead of whatever is on PATH
    "certbot": f"{shlex.quote(sys.executable)} -m certbot",
    "reloadCommand": "",
}

Settings = collections.namedtuple(
    "Settings",
    [
        "email",
        "server",
        "keyType",
        "authenticator",
        "rsaKeySize",
        "curve",
        "dhparamBits",
        "webroot",
        "letsencryptDir",
        "nginxConfig",
        "nginxPrefix",
        "dnsPropagationSeconds",
        "acmeTimeout",
        "dhparamTimeout",
        "certbot",
        "reloadCommand",
        "force",
        "dryRun",
        "concurrency",
    ],
    defaults=(
        "",
        PRODUCTION,
        "",
        "",
        2048,
        "secp256r1",
        2048,
        "/var/www/letsencrypt",
        "/etc/letsencrypt",
        ("/etc/nginx/conf.d",),
        "/etc/nginx",
        0,
        0,
        0,
        (sys.executable, "-m", "certbot"),
        "",
        False,
        False,
        1,
    ),
)

# Everything one nginx file told us. 'serverNames' keeps one entry per
# server_name line, in file order, repeats and all.
ScanResult = collections.namedtuple(
    "ScanResult",
    ["identities", "certificates", "trustedCertificates", "dhparams", "serverNames"],
)
ServerNameLine = collections.namedtuple("ServerNameLine", ["lineno", "names", "marker"])

CertificatePlan = collections.namedtuple(
    "CertificatePlan", ["identity", "domains", "keyType", "authenticator"]
)


class CertctlError(Exception):
    """Anything certctl reports instead of crashing."""


class AmbiguousMarkupError(CertctlError):
    def __init__(self, path, lineno, openMarker, marker):
        super().__init__(
            f"{path}:{lineno}: '{MARKER}{marker}' opened while "
            f"'{MARKER}{openMarker}' is still open"
        )
        self.path = path
        self.lineno = lineno
        self.openMarker = openMarker
        self.marker = marker


class MissingCredentialError(CertctlError):
    pass


class UnknownAuthenticatorError(CertctlError):
    pass


class ExternalClientError(CertctlError):
    pass


def log(what, mode="", update=False, level=1):
    # If requesting more than just a newline separator...
    if what:
        if IS_TEST:
            prefix = "[TEST] "
        else:
            prefix = "> "
    else:
        prefix = ""

    if mode:
        mode = f"[{mode}]"

    if update or (not IS_CRON and VERBOSITY >= level):
        print(f"{prefix}{mode} {what}")


def err(what, mode="", kind="Error"):
    """Report a problem on stderr; never silenced by --cron"""
    if mode:
        mode = f"[{mode}] "

    print(f"{kind}: {mode}{what}", file=sys.stderr)


def showCommand(thing):
    if isinstance(thing, str):
        return thing

    return shlex.join(str(t) for t in thing)


def run(thing, timeout=None):
    """Run a command given as a string or an argv list and capture output"""
    log(f"Running: {showCommand(thing)}", "CMD", update=True)

    # We need an argv list where command[0] is the executable
    command = thing
    if isinstance(thing, str):
        command = shlex.split(thing)

    ran = subprocess.run(
        command,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        timeout=timeout,
    )

    if VERBOSITY >= 2:
        for stream in (ran.stdout, ran.stderr):
            if stream:
                print(stream.decode("utf-8", "replace").rstrip())

    # Check after printing so failing commands still show what they said
    if ran.returncode:
        raise subprocess.CalledProcessError(
            ran.returncode, command, ran.stdout, ran.stderr
        )

    return ran


def runExternal(thing, timeout=0, name=None):
    """run(), but any way the tool can fail becomes ExternalClientError"""
    if name is None:
        name = shlex.split(thing)[0] if isinstance(thing, str) else thing[0]

    try:
        return run(thing, timeout=timeout or None)
    except subprocess.CalledProcessError as e:
        detail = ""
        if e.stderr:
            lines = e.stderr.decode("utf-8", "replace").strip().splitlines()
            if lines:
                detail = f": {lines[-1]}"

        raise ExternalClientError(
            f"{name} exited with status {e.returncode}{detail}"
        ) from e
    except subprocess.TimeoutExpired as e:
        raise ExternalClientError(f"{name} timed out after {e.timeout}s") from e
    except OSError as e:
        raise ExternalClientError(f"unable to run {name}: {e}") from e


def runAndWrite(thing, writeTo, perm=0o644, timeout=0):
    ran = runExternal(thing, timeout)

    # Python doesn't have a clean way of opening files with
    # pre-determined file permissions, so we get to do this instead...
    flags = os.O_WRONLY | os.O_CREAT | os.O_TRUNC
    with os.fdopen(os.open(writeTo, flags, perm), "w") as w:
        w.write(ran.stdout.decode("utf-8"))


def unique(things):
    """Drop repeats, keeping the first of each where it was"""
    return list(dict.fromkeys(things))


def loadConfig(configPath):
    """Read certctl.conf; a missing file just means defaults"""
    conf = configparser.ConfigParser(interpolation=None)
    conf["DEFAULT"] = CONFIG_DEFAULTS

    try:
        conf.read(configPath, encoding="utf-8")
    except (configparser.Error, UnicodeDecodeError) as e:
        raise CertctlError(f"Unable to parse {configPath}: {e}") from e

    if not conf.has_section("config"):
        conf.add_section("config")

    return conf


def saveEmail(configPath, email):
    """Store the ACME account email, keeping the rest of certctl.conf"""
    if "@" not in email:
        raise CertctlError(f"Not an email address: {email}")

    # Fresh parser without our DEFAULT values, otherwise
    # every default would get written into the file too.
    conf = configparser.ConfigParser(interpolation=None)
    try:
        conf.read(configPath, encoding="utf-8")
    except (configparser.Error, UnicodeDecodeError) as e:
        raise CertctlError(f"Unable to parse {configPath}: {e}") from e

    if not conf.has_section("config"):
        conf.add_section("config")

    conf["config"]["email"] = email

    try:
        pathlib.Path(configPath).parent.mkdir(parents=True, exist_ok=True)
        flags = os.O_WRONLY | os.O_CREAT | os.O_TRUNC
        with os.fdopen(os.open(configPath, flags, 0o600), "w", encoding="utf-8") as w:
            conf.write(w)

        # O_CREAT modes only apply to new files
        os.chmod(configPath, 0o600)
    except OSError as e:
        raise CertctlError(f"Unable to write {configPath}: {e}") from e


def loadSettings(args):
    """Merge certctl.conf with command line overrides"""
    config = loadConfig(args.config)["config"]

    def pick(name, key):
        value = getattr(args, name, None)
        if value is None:
            return config[key]

        return value

    def pickInt(name, key):
        value = pick(name, key)
        try:
            return int(value)
        except ValueError:
            raise CertctlError(f"'{key}' must be a number, not: {value}") from None

    keyType = pick("keyType", "keyType").lower()
    if keyType and keyType not in KEY_TYPES:
        raise CertctlError(f"Unknown key type '{keyType}' (use one of {KEY_TYPES})")

    nginxConfig = pick("nginxConfig", "nginxConfig")
    if isinstance(nginxConfig, str):
        nginxConfig = nginxConfig.split()

    return Settings(
        email=pick("email", "email"),
        server=STAGING if getattr(args, "isTest", False) else PRODUCTION,
        keyType=keyType,
        authenticator=pick("authenticator", "authenticator").lower(),
        rsaKeySize=pickInt("rsaKeySize", "rsaKeySize"),
        curve=pick("curve", "curve"),
        dhparamBits=pickInt("dhparamBits", "dhparamBits"),
        webroot=config["webroot"],
        letsencryptDir=config["letsencryptDir"],
        nginxConfig=tuple(nginxConfig),
        nginxPrefix=config["nginxPrefix"],
        dnsPropagationSeconds=pickInt("dnsPropagationSeconds", "dnsPropagationSeconds"),
        acmeTimeout=pickInt("acmeTimeout", "acmeTimeout"),
        dhparamTimeout=pickInt("dhparamTimeout", "dhparamTimeout"),
        certbot=tuple(shlex.split(config["certbot"])),
        reloadCommand=config["reloadCommand"],
        force=getattr(args, "force", False),
        dryRun=getattr(args, "dryRun", False),
        concurrency=getattr(args, "concurrency", 1),
    )


def splitDirective(line):
    """Split one config line into (keyword, args, comment), or None"""
    line = line.strip()
    if not line or line.startswith("#"):
        return None

    code, _, comment = line.partition("#")
    code = code.rstrip()
    if not code.endswith(";"):
        return None

    words = code[:-1].split()
    if not words:
        return None

    return words[0], words[1:], comment.strip()


def unquote(path):
    if len(path) > 1 and path[0] == path[-1] and path[0] in "'\"":
        return path[1:-1]

    return path


def identityFromKeyPath(path):
    """Certificate name of a '/<base>/live/<name>/privkey.pem' key path.

    Anything else isn't a certbot managed key and gets None."""
    # e.g. ['', 'etc', 'letsencrypt', 'live', 'mysite', 'privkey.pem']
    parts = path.split("/")
    if len(parts) < 5 or parts[0] or not all(parts[1:-3]):
        return None

    if parts[-3] != "live" or parts[-1] != "privkey.pem" or not parts[-2]:
        return None

    return parts[-2]


def parseMarker(comment):
    for word in comment.lstrip("#").split():
        if word.startswith(MARKER) and len(word) > len(MARKER):
            return word[len(MARKER) :]

    return ""


def scanConfig(lines):
    """Pull the directives we care about out of one nginx file"""
    identities = []
    serverNames = []
    paths = {
        "ssl_certificate": [],
        "ssl_trusted_certificate": [],
        "ssl_dhparam": [],
    }

    for lineno, line in enumerate(lines, 1):
        directive = splitDirective(line)
        if not directive:
            continue

        keyword, args, comment = directive
        if keyword == "server_name":
            if args:
                serverNames.append(ServerNameLine(lineno, args, parseMarker(comment)))

            continue

        if keyword != "ssl_certificate_key" and keyword not in paths:
            continue

        if len(args) != 1:
            log(f"Skipping line {lineno}: {line.strip()}", "scan", level=2)
            continue

        path = unquote(args[0])
        if keyword == "ssl_certificate_key":
            identity = identityFromKeyPath(path)
            if identity:
                identities.append(identity)
            else:
                log(f"Not a certbot key, ignoring: {path}", "scan", level=2)
        else:
            paths[keyword].append(path)

    return ScanResult(
        unique(identities),
        unique(paths["ssl_certificate"]),
        unique(paths["ssl_trusted_certificate"]),
        unique(paths["ssl_dhparam"]),
        serverNames,
    )


def isIPAddress(name):
    try:
        ipaddress.ip_address(name.strip("[]"))
    except ValueError:
        return False

    return True


def isCertifiable(name):
    # '~' starts a regex server name; no way to turn those into domains
    if name.startswith("~"):
        return False

    return name not in PLACEHOLDER_NAMES and not isIPAddress(name)


def resolveServerNames(serverNames, path="<config>"):
    """Turn one file's server_name lines into domain names, in order.

    A tagged name either opens a block (its tag value is emitted once in
    place of the block) or closes the block opened with the same tag.
    Untagged names inside an open block are covered by the tag value.
    Repeats are kept; aggregation deduplicates across all files."""
    domains = []
    substituting = ""

    for line in serverNames:
        for name in line.names:
            if line.marker:
                if not substituting:
                    substituting = line.marker
                    domains.append(line.marker)
                elif substituting == line.marker:
                    substituting = ""
                else:
                    raise AmbiguousMarkupError(
                        path, line.lineno, substituting, line.marker
                    )
            elif substituting:
                continue
            elif isCertifiable(name):
                domains.append(name)
            else:
                log(f"{path}:{line.lineno}: ignoring {name}", "scan", level=2)

    return domains


def mergeFindings(registry, identities, domains):
    """New registry with one file's domains added to each of its certificates"""
    merged = dict(registry)
    for identity in identities:
        existing = merged.get(identity, ())
        merged[identity] = tuple(unique(itertools.chain(existing, domains)))

    return merged


def buildRegistry(findings):
    """Fold (identities, domains) pairs, one per file, into one registry"""
    return functools.reduce(
        lambda registry, found: mergeFindings(registry, *found), findings, {}
    )


def hasTag(name, tag):
    """Does 'tag' appear in 'name' bounded by '-', '.' or either end?"""
    name = name.lower()
    start = name.find(tag)
    while start != -1:
        end = start + len(tag)
        before = name[start - 1] if start else "-"
        after = name[end] if end < len(name) else "-"
        if before in "-." and after in "-.":
            return True

        start = name.find(tag, start + 1)

    return False


def resolveKeyType(identity, default=""):
    for tag, keyType in KEY_TYPE_TAGS:
        if hasTag(identity, tag):
            return keyType

    return default or "ecdsa"


def resolveAuthenticator(identity, default="", providers=DNS_PROVIDERS):
    if hasTag(identity, "webroot"):
        return "webroot"

    for provider in providers:
        if hasTag(identity, f"dns-{provider}"):
            return f"dns-{provider}"

    return default or "webroot"


def planCertificates(registry, settings):
    return [
        CertificatePlan(
            identity,
            domains,
            resolveKeyType(identity, settings.keyType),
            resolveAuthenticator(identity, settings.authenticator),
        )
        for identity, domains in registry.items()
    ]


def hasAWSCredentials():
    if os.environ.get("AWS_ACCESS_KEY_ID") and os.environ.get("AWS_SECRET_ACCESS_KEY"):
        return True

    return os.path.isfile(os.path.expanduser("~/.aws/credentials"))


def authenticatorArgs(authenticator, settings):
    """certbot arguments selecting and configuring one authenticator"""
    if authenticator == "webroot":
        return ["--webroot", "-w", settings.webroot]

    provider = authenticator[len("dns-") :]
    if not authenticator.startswith("dns-") or provider not in DNS_PROVIDERS:
        raise UnknownAuthenticatorError(f"Unknown authenticator '{authenticator}'")

    if provider == AMBIENT_PROVIDER:
        if not hasAWSCredentials():
            raise MissingCredentialError(
                "No AWS credentials: set AWS_ACCESS_KEY_ID and "
                "AWS_SECRET_ACCESS_KEY or create ~/.aws/credentials"
            )

        # The route53 plugin waits for propagation on its own
        return [f"--{authenticator}"]

    credentials = os.path.join(settings.letsencryptDir, f"{provider}.ini")
    if not os.path.isfile(credentials):
        raise MissingCredentialError(f"Credentials file not found: {credentials}")

    args = [f"--{authenticator}", f"--{authenticator}-credentials", credentials]
    if settings.dnsPropagationSeconds:
        wait = str(settings.dnsPropagationSeconds)
        args.extend([f"--{authenticator}-propagation-seconds", wait])

    return args


def buildCommand(plan, settings):
    """Full certbot command line for one planned certificate"""
    if not plan.domains:
        raise CertctlError("No server names found for this certificate")

    command = list(settings.certbot)
    command.extend(["certonly", "--non-interactive", "--agree-tos"])
    command.extend(["--email", settings.email, "--server", settings.server])
    command.extend(["--cert-name", plan.identity, "--key-type", plan.keyType])

    if plan.keyType == "rsa":
        command.extend(["--rsa-key-size", str(settings.rsaKeySize)])
    else:
        command.extend(["--elliptic-curve", settings.curve])

    # First domain becomes the CN, the rest are SANs
    for domain in plan.domains:
        command.extend(["-d", domain])

    command.extend(authenticatorArgs(plan.authenticator, settings))

    # certbot does nothing for a valid certificate unless forced
    if settings.force:
        command.append("--force-renewal")
    else:
        command.append("--keep-until-expiring")

    if settings.reloadCommand:
        command.extend(["--deploy-hook", settings.reloadCommand])

    return command


def requestCertificate(plan, settings):
    """Ask certbot for one planned certificate; True if it worked"""
    log(
        f"Requesting {plan.identity} ({plan.keyType}, {plan.authenticator}) "
        f"for {', '.join(plan.domains)}",
        plan.identity,
    )

    try:
        command = buildCommand(plan, settings)
        if settings.dryRun:
            log(f"Would run: {showCommand(command)}", "dry-run", update=True)
            return True

        runExternal(command, settings.acmeTimeout, "certbot")
    except CertctlError as e:
        err(f"{plan.identity}: {e}", "issue")
        return False

    log(f"Certificate {plan.identity} is current", plan.identity, update=True)
    return True


def issueAll(plans, settings):
    """Request every plan; one failing never stops the others"""
    concurrency = min(settings.concurrency, MAX_CONCURRENCY)
    if concurrency > 1:
        with multiprocessing.Pool(processes=concurrency) as pool:
            return pool.starmap(
                requestCertificate, itertools.product(plans, [settings])
            )

    return [requestCertificate(plan, settings) for plan in plans]


def ensureDHParams(paths, settings):
    """Generate every referenced DH parameter file that doesn't exist yet"""
    ok = True
    for path in paths:
        # join() leaves absolute paths alone
        path = os.path.join(settings.nginxPrefix, path)
        if os.path.exists(path):
            log(f"Using existing {path}", "dhparam", level=2)
            continue

        if settings.dryRun:
            log(
                f"Would generate {settings.dhparamBits} bit DH parameters at {path}",
                "dry-run",
                update=True,
            )
            continue

        # 2048 bits takes seconds, 4096 can take many minutes. Nothing to do
        # about that except tell the user why we're sitting here.
        log(
            f"Generating {settings.dhparamBits} bit DH parameters at {path}, "
            "this may take a while...",
            "dhparam",
            update=True,
        )

        try:
            pathlib.Path(path).parent.mkdir(parents=True, exist_ok=True)
            runAndWrite(
                f"openssl dhparam {settings.dhparamBits}",
                path,
                0o600,
                settings.dhparamTimeout,
            )
            os.chmod(path, 0o600)
        except (CertctlError, OSError) as e:
            err(f"{path}: {e}", "dhparam")
            ok = False

    return ok


def findConfigFiles(locations):
    """Expand directories into their '*.conf' files, sorted by name"""
    files = []
    for location in locations:
        if os.path.isdir(location):
            files.extend(sorted(str(p) for p in pathlib.Path(location).glob("*.conf")))
        else:
            files.append(location)

    return unique(files)


def readLines(path):
    try:
        with open(path, "r", errors="replace") as conf:
            return conf.read().splitlines()
    except OSError as e:
        raise CertctlError(f"Unable to read nginx config {path}: {e}") from e


def scanConfigFiles(paths):
    """Scan and resolve every file before anything runs.

    Returns a list of (path, ScanResult, domains)."""
    found = []
    for path in paths:
        scan = scanConfig(readLines(path))
        domains = resolveServerNames(scan.serverNames, path)
        counts = f"{len(scan.identities)} certificates, {len(domains)} names"
        log(f"{path}: {counts}", "scan", level=2)
        found.append((path, scan, domains))

    return found


def reportMissingFiles(paths, prefix):
    for path in paths:
        path = os.path.join(prefix, path)
        if not os.path.exists(path):
            err(f"{path} is referenced by nginx but doesn't exist", "check", "Warning")


def issueFromConfig(settings):
    """Plan and request every certificate the nginx config references"""
    paths = findConfigFiles(settings.nginxConfig)
    log(f"Scanning {len(paths)} nginx config files...", "scan")

    found = scanConfigFiles(paths)

    dhparams = unique(itertools.chain(*[scan.dhparams for _, scan, _ in found]))
    ok = ensureDHParams(dhparams, settings)

    registry = buildRegistry((scan.identities, domains) for _, scan, domains in found)
    if not registry:
        log("No certbot managed certificates referenced by nginx", "scan", update=True)
        return ok

    plans = planCertificates(registry, settings)

    log("Using certificate list:")
    for plan in plans:
        log(f"\t{plan.identity}: {' '.join(plan.domains)}")

    results = issueAll(plans, settings)
    failed = [plan.identity for plan, worked in zip(plans, results) if not worked]
    if failed:
        err(f"{len(failed)} of {len(plans)} certificates failed: {', '.join(failed)}")
        ok = False

    if not settings.dryRun:
        referenced = itertools.chain(
            *[scan.certificates + scan.trustedCertificates for _, scan, _ in found]
        )
        reportMissingFiles(unique(referenced), settings.nginxPrefix)

    return ok


def issueDomains(domains, settings, certName=None, keyType=None, authenticator=None):
    """Request one certificate for domains given on the command line.

    Explicit key type and authenticator arguments beat anything the
    certificate name implies."""
    # Accept both '-d a -d b' and '-d a,b' like certbot does
    domains = unique(d for arg in domains for d in arg.split(",") if d)
    if not domains:
        raise CertctlError("No domains given, use -d DOMAIN")

    # certbot names wildcard certificates without the '*.'
    identity = certName or domains[0].replace("*.", "")

    plan = CertificatePlan(
        identity,
        tuple(domains),
        keyType or resolveKeyType(identity, settings.keyType),
        authenticator or resolveAuthenticator(identity, settings.authenticator),
    )

    return requestCertificate(plan, settings)


def renewAll(settings):
    """Let certbot renew whatever is close to expiring"""
    command = list(settings.certbot) + ["renew", "--non-interactive"]
    if settings.server == STAGING:
        command.extend(["--server", STAGING])

    if settings.force:
        command.append("--force-renewal")

    if settings.reloadCommand:
        command.extend(["--deploy-hook", settings.reloadCommand])

    if settings.dryRun:
        log(f"Would run: {showCommand(command)}", "dry-run", update=True)
        return True

    try:
        runExternal(command, settings.acmeTimeout, "certbot")
    except CertctlError as e:
        err(str(e), "renew")
        return False

    return True


def buildParser():
    parser = argparse.ArgumentParser(
        prog="certctl",
        description="Request the Let's Encrypt certificates your nginx config uses",
    )

    parser.add_argument(
        "--config",
        dest="config",
        default=CONFIG_PATH,
        help="Path to certctl.conf (also where 'set-email' stores the email)",
    )

    parser.add_argument(
        "--cron",
        dest="isCron",
        action="store_true",
        help="Only produce output when changes happen.",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        dest="verbose",
        action="count",
        default=0,
        help="Also show skipped config lines and output of every command",
    )

    # Options for anything that talks to the CA
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--staging",
        "--test",
        dest="isTest",
        action="store_true",
        help="Use the LE staging endpoint. "
        "Don't waste your production rate limits during testing.",
    )

    common.add_argument(
        "--force",
        dest="force",
        action="store_true",
        help="Request new certificates even if current ones are still valid",
    )

    common.add_argument(
        "--dry-run",
        dest="dryRun",
        action="store_true",
        help="Print what would be run without running it",
    )

    issuing = argparse.ArgumentParser(add_help=False, parents=[common])
    issuing.add_argument("--email", dest="email", help="ACME account email")
    issuing.add_argument("--key-type", dest="keyType", choices=KEY_TYPES)
    issuing.add_argument("--rsa-key-size", dest="rsaKeySize", type=int)
    issuing.add_argument("--elliptic-curve", dest="curve")
    issuing.add_argument(
        "--authenticator",
        dest="authenticator",
        help="'webroot' or 'dns-<provider>' "
        f"(providers: {', '.join(DNS_PROVIDERS)})",
    )

    issuing.add_argument(
        "--dns-propagation-seconds",
        dest="dnsPropagationSeconds",
        type=int,
        help="Seconds DNS plugins wait for records to propagate",
    )

    commands = parser.add_subparsers(dest="command", metavar="command")
    commands.required = True

    issue = commands.add_parser(
        "issue", parents=[issuing], help="Request one certificate for given domains"
    )
    issue.add_argument(
        "-d",
        "--domain",
        dest="domains",
        action="append",
        default=[],
        help="Domain for the certificate (repeatable, first one is the CN)",
    )
    issue.add_argument(
        "--cert-name",
        dest="certName",
        help="Certificate name (default: first domain)",
    )

    fromConfig = commands.add_parser(
        "issue-from-config",
        parents=[issuing],
        help="Request every certificate referenced by the nginx config",
    )
    fromConfig.add_argument(
        "--nginx-config",
        dest="nginxConfig",
        action="append",
        help="nginx config file or directory of *.conf files (repeatable)",
    )
    fromConfig.add_argument(
        "--parallel",
        dest="concurrency",
        default=1,
        type=int,
        help="Number of certificates to request in parallel",
    )

    commands.add_parser(
        "renew", parents=[common], help="Renew certificates close to expiring"
    )

    setEmail = commands.add_parser("set-email", help="Store the ACME account email")
    setEmail.add_argument("email")

    return parser


def main(argv=None):
    global IS_TEST, IS_CRON, VERBOSITY

    args = buildParser().parse_args(argv)

    IS_CRON = args.isCron
    IS_TEST = getattr(args, "isTest", False)
    VERBOSITY = 1 + args.verbose

    try:
        if args.command == "set-email":
            saveEmail(args.config, args.email)
            log(f"Account email set to {args.email}", update=True)
            return 0

        settings = loadSettings(args)

        if args.command == "renew":
            ok = renewAll(settings)
        else:
            if not settings.email:
                raise CertctlError(
                    "No account email. Use --email or 'certctl set-email EMAIL'"
                )

            if IS_TEST:
                log("[TEST MODE - DO NOT USE TEST CERTS IN PRODUCTION]")

            if args.command == "issue":
                ok = issueDomains(
                    args.domains,
                    settings,
                    args.certName,
                    args.keyType,
                    # loadSettings already lowercased it
                    settings.authenticator if args.authenticator else None,
                )
            else:
                ok = issueFromConfig(settings)
    except CertctlError as e:
        err(str(e))
        return 1

    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
