from .models import Tenant

TENANT_SESSION_KEY = "active_tenant_id"
TENANT_HEADER = "X-Tenant"


def resolve_tenant(value):
    """Return the active tenant for a Tenant instance, primary key or slug."""
    if isinstance(value, Tenant):
        value = value.pk
    tenants = Tenant.objects.filter(is_active=True)
    if isinstance(value, int) or (isinstance(value, str) and value.isdigit()):
        return tenants.get(pk=int(value))
    return tenants.get(slug=value)


class TenantMiddleware:
    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        request.tenant = None

        session = getattr(request, "session", None)
        tenant_id = session.get(TENANT_SESSION_KEY) if session is not None else None
        if tenant_id:
            request.tenant = Tenant.objects.filter(id=tenant_id, is_active=True).first()

        if request.tenant is None:
            slug = request.headers.get(TENANT_HEADER)
            if slug:
                request.tenant = Tenant.objects.filter(slug=slug, is_active=True).first()

        return self.get_response(request)
